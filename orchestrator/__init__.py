"""
Chat Task Orchestrator

Lets a single operator drive an external AI task runner (the Claude CLI, one
subprocess per request) from a chat front end, with at most one task running
per conversation and nothing risky executing without explicit approval.

Components:
- ExecutionLock: per-conversation busy flag and cancellation tokens
- ActiveTaskTracker: durable record of in-flight runs for crash recovery
- TaskQueue: bounded FIFO (5 per conversation) for work arriving while busy
- PlanStore: durable single-slot store for plans awaiting a decision
- Dispatcher: plan -> approve / revise / cancel -> execute state machine
- ImproveLoopController: autonomous multi-iteration loop with batch
  planning, cost limit and consecutive-failure circuit breakers
- ProgressChannel: bounded, drop-oldest side channel for status updates
- OrchestratorService: wiring and startup recovery

The chat transport, the intent classifier and the runner's reasoning are
external collaborators.
"""

__version__ = "0.4.0"
