from robustness.health.monitor import AgentHealthMonitor

__all__ = ["AgentHealthMonitor"]
