from robustness.session.manager import SessionManager, session_key

__all__ = ["SessionManager", "session_key"]
