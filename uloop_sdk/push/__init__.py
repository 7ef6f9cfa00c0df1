"""Push-notification channel from Unity back to the client."""

from uloop_sdk.push.server import PushNotificationReceiver
from uloop_sdk.push.router import PushNotificationRouter

__all__ = [
    "PushNotificationReceiver",
    "PushNotificationRouter",
]
