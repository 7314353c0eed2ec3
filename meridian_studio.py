#!/usr/bin/env python3
"""
Meridian Studio: terminal front end for the panel and conversation core
=======================================================================

Connects to the task engine, mounts the core panels, and runs a prompt
loop.  Plain lines are submitted as prompts, and an empty line sends
whatever voice capture dictated; slash commands drive panels, voice
capture and affect features.

Usage:
    python3 meridian_studio.py                         # Interactive terminal mode
    python3 meridian_studio.py --affect                # Enable affect/reflection + speech
    python3 meridian_studio.py --pulse                 # Also serve the Pulse dashboard
    python3 meridian_studio.py --status                # Print runtime status and exit
    python3 meridian_studio.py --backend http://host:7777

Commands:
    /panels              list mounted panels
    /open <pipeline>     inject the panel for a pipeline id and select it
    /close <panel>       uninject a panel
    /show [panel]        render a panel (default: the active one)
    /voice               toggle microphone capture
    /affect on|off       toggle affect features
    /tasks               show tracked tasks
    /status              runtime status
    /quit                exit
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Optional

sys.path.insert(0, str(Path(__file__).resolve().parent))

from lib.meridian import __version__
from lib.meridian.config import StudioConfig
from lib.meridian.panels import InjectOptions
from lib.meridian.runtime import StudioRuntime
from lib.ports import HOST, PULSE_PORT, PULSE_URL

log = logging.getLogger("meridian.studio")

_LOG_DIR = Path.home() / ".meridian" / "logs"


def _configure_logging(verbose: bool = False) -> None:
    _LOG_DIR.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        handlers=[
            logging.FileHandler(_LOG_DIR / "studio.log"),
            logging.StreamHandler(sys.stderr),
        ],
    )


class _C:
    RESET = "\033[0m"
    DIM = "\033[2m"
    AI = "\033[38;5;45m"           # Cyan
    USER = "\033[38;5;117m"        # Light blue
    SYSTEM = "\033[38;5;243m"      # Gray
    ERROR = "\033[38;5;196m"       # Red
    SUCCESS = "\033[38;5;82m"      # Green


def _say(msg: str, color: str = _C.SYSTEM) -> None:
    print(f"{color}{msg}{_C.RESET}")


# ---------------------------------------------------------------------------
# Shell
# ---------------------------------------------------------------------------

class StudioShell:
    """Slash-command dispatcher and prompt loop over a :class:`StudioRuntime`."""

    def __init__(self, runtime: StudioRuntime) -> None:
        self.runtime = runtime
        self.running = True

    async def run(self) -> None:
        while self.running:
            try:
                line = await asyncio.to_thread(input, f"{_C.USER}[You]{_C.RESET} ")
            except (EOFError, KeyboardInterrupt):
                break
            try:
                await self.dispatch(line)
            except Exception as exc:
                log.error("Loop error: %s", exc, exc_info=True)
                _say(f"  Internal error: {exc}", _C.ERROR)

    async def dispatch(self, line: str) -> None:
        text = line.strip()
        if text.startswith("/"):
            await self.handle_command(text)
            return

        rt = self.runtime
        # typed lines go out as they are; an empty line sends the dictated buffer
        if not text and not rt.prompt.text.strip():
            return
        turn = await rt.conversation.handle_submit(text or None)
        if turn is None:
            _say("  Not sent: backend is not connected.", _C.ERROR)
            return
        color = _C.ERROR if turn.emotion == "concerned" else _C.AI
        _say(f"[Meridian] {turn.content}", color)

    async def handle_command(self, text: str) -> bool:
        """Run one slash command.  Returns False for unknown commands."""
        cmd, _, arg = text.partition(" ")
        cmd, arg = cmd.lower(), arg.strip()
        rt = self.runtime
        injector = rt.injector

        if cmd in ("/quit", "/exit"):
            self.running = False
            _say("  Goodbye.")
            return True

        if cmd == "/panels":
            for panel in injector.ordered():
                marker = "*" if panel.id == injector.active_id else " "
                badge = f" ({panel.badge})" if panel.badge else ""
                core = " [core]" if panel.is_core else ""
                _say(f"  {marker} {panel.icon} {panel.id}: {panel.label}{badge}{core}")
            return True

        if cmd == "/open":
            try:
                pipeline_id = int(arg)
            except ValueError:
                _say("  Usage: /open <pipeline id>", _C.ERROR)
                return True
            panel = injector.inject(pipeline_id, InjectOptions(make_active=True))
            if panel is None:
                _say(f"  Pipeline {pipeline_id} has no UI module.", _C.ERROR)
            else:
                _say(f"  Opened {panel.icon} {panel.label} ({panel.id})", _C.SUCCESS)
            return True

        if cmd == "/close":
            if injector.uninject(arg):
                _say(f"  Closed {arg}", _C.SUCCESS)
            else:
                _say(f"  Cannot close {arg!r}", _C.ERROR)
            return True

        if cmd == "/show":
            print(injector.render(arg or None))
            return True

        if cmd == "/voice":
            listening = await rt.voice.toggle_voice()
            _say("  Listening..." if listening else "  Voice capture off.")
            return True

        if cmd == "/affect":
            if arg not in ("on", "off"):
                _say(f"  Affect features are {'on' if rt.affect.enabled else 'off'}.")
                return True
            await rt.set_affect_enabled(arg == "on")
            _say(f"  Affect features {arg}.", _C.SUCCESS)
            return True

        if cmd == "/tasks":
            tasks = rt.tasks.tasks
            if not tasks:
                _say("  No tasks.")
            for task in tasks:
                _say(f"  #{task.id} pipeline {task.pipeline_id} {task.status.value} {task.progress:.0%}")
            return True

        if cmd == "/status":
            print(json.dumps(rt.status(), indent=2, default=str))
            return True

        _say(f"  Unknown command {cmd}", _C.ERROR)
        return False


# ---------------------------------------------------------------------------
# CLI Entry Point
# ---------------------------------------------------------------------------

async def _serve_pulse(runtime: StudioRuntime, port: int) -> None:
    import uvicorn

    from meridian.pulse.app import create_app

    config = uvicorn.Config(create_app(runtime), host=HOST, port=port, log_level="warning")
    await uvicorn.Server(config).serve()


async def run(config: StudioConfig, *, pulse: bool, status_only: bool) -> None:
    runtime = StudioRuntime(config)
    await runtime.start()
    pulse_task: Optional[asyncio.Task] = None
    try:
        if status_only:
            print(json.dumps(runtime.status(), indent=2, default=str))
            return
        if pulse:
            pulse_task = asyncio.create_task(_serve_pulse(runtime, PULSE_PORT))
            _say(f"  Pulse dashboard on {PULSE_URL}/")
        _say(f"  Meridian Studio v{__version__} -- /panels, /open <id>, /voice, /quit", _C.AI)
        await StudioShell(runtime).run()
    finally:
        if pulse_task is not None:
            pulse_task.cancel()
            try:
                await pulse_task
            except asyncio.CancelledError:
                pass
        await runtime.stop()


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Meridian Studio - panel injection and conversation front end",
    )
    parser.add_argument(
        "--backend",
        type=str,
        default=None,
        help="Task engine URL (default: MERIDIAN_BACKEND_URL or http://127.0.0.1:7777)",
    )
    parser.add_argument(
        "--affect",
        action="store_true",
        help="Enable affect/reflection polling and speech output",
    )
    parser.add_argument(
        "--no-speech",
        action="store_true",
        help="Never play synthesized speech",
    )
    parser.add_argument(
        "--pulse",
        action="store_true",
        help="Serve the Pulse dashboard alongside the terminal",
    )
    parser.add_argument(
        "--status",
        action="store_true",
        help="Print runtime status and exit",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Debug logging",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Show version and exit",
    )
    args = parser.parse_args()

    if args.version:
        print(f"Meridian Studio v{__version__}")
        return

    _configure_logging(args.verbose)
    config = StudioConfig.from_env()
    if args.backend:
        config.backend_url = args.backend
    if args.affect:
        config.affect_enabled = True
    if args.no_speech:
        config.speech_output = False

    try:
        asyncio.run(run(config, pulse=args.pulse, status_only=args.status))
    except KeyboardInterrupt:
        log.info("Interrupted")


if __name__ == "__main__":
    main()
