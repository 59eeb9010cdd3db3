from control_plane.agents.notification_service import app as notification_app
from control_plane.agents.sweeper_service import app as sweeper_app

__all__ = ["notification_app", "sweeper_app"]
