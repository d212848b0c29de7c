from .notifier import AlertSink, EmailAlertSink, LogAlertSink, create_alert_sink

__all__ = ["AlertSink", "EmailAlertSink", "LogAlertSink", "create_alert_sink"]
