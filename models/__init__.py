from models.sessions import AuthSession

__all__ = ["AuthSession"]
