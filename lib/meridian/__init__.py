"""
Meridian Studio: panel injection and conversation orchestration core

The Meridian layer sits between the user-facing shell (terminal loop or
pulse dashboard) and the backend task engine.  It decides which pipeline
panels are mounted, drives the prompt/response cycle, and mirrors the
backend's affect and voice state.

Modules:
- config: env-overridable StudioConfig and well-known pipeline ids
- backend: request/response boundary to the task engine (httpx client)
- registry: static pipeline UI registry (names, icons, UI capability)
- module_loader: runtime resolution of pipeline panel modules
- panels: panel injector state machine and shared panel state
- task_bridge: task lifecycle hooks, badge projection, task watcher
- pollers: independently cancellable periodic asyncio pollers
- affect: affect/reflection snapshot polling and triggers
- voice: microphone capture sessions and speech playback
- conversation: transcript, prompt buffer, and submission strategies
- builtin_panels: text panels for the core pipelines and the log viewer
- runtime: composition root wiring every component together
"""

__version__ = "0.4.0"
