"""Operation queue orchestration: store, registry, dispatcher and watchdog."""
