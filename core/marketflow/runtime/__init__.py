"""Run-time machinery: RunContext, the scheduler, the engine and the event bus."""
