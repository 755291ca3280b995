from typing import Literal

from pydantic import BaseModel


class NotificationAction(BaseModel):
    """A button rendered alongside an in-app notification."""

    id: str
    label: str
    type: Literal["navigate", "api"]
    route: str | None = None
    endpoint: str | None = None
    method: str | None = None
    variant: Literal["primary", "secondary"] = "primary"
