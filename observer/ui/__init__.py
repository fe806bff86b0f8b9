from .app import App, ViewState
from .navigation import Navigator

__all__ = ["App", "Navigator", "ViewState"]
