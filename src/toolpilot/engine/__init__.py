from toolpilot.engine.executor import AgentExecutor, StepResult, TurnResult

__all__ = ["AgentExecutor", "StepResult", "TurnResult"]
