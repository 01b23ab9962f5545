"""
counsel_bot: orchestration core for a two-role support conversation.

Modules:
  - models:        conversation state, risk levels, history turns, context
  - state_machine: legal / risk-forced transitions and risk assessment
  - tasks:         background task manager (schedule, wait, sweep)
  - generation:    resilient Bedrock client (timeout, retry, circuit breaker, parsing)
  - orchestrator:  the per-turn LangGraph pipeline
  - repository:    session storage boundary + in-memory adapter
  - app:           terminal chat loop
"""

__version__ = "0.1.0"
