"""
Test Suite for the Chat Task Orchestrator

This package contains tests for every orchestration component:
- stores (queue, plans, active tasks, persistence)
- execution lock, runner and progress channel
- dispatcher and improve loop state machines
- service wiring and startup recovery
"""
