from robustness.notify.alerts import AlertNotifier, AlertPayload

__all__ = ["AlertNotifier", "AlertPayload"]
