"""Built-in authentication controllers.

- :class:`NoopAuthController` -- no background work.
- :class:`DeviceFlowController` -- :rfc:`8628` polling.
- :class:`RefreshingOAuth2Controller` -- proactive token refresh, wrapping
  any other controller.
"""

from credman.controllers.device_flow import DeviceFlowController
from credman.controllers.noop import NoopAuthController
from credman.controllers.refreshing import RefreshingOAuth2Controller

__all__ = [
    "DeviceFlowController",
    "NoopAuthController",
    "RefreshingOAuth2Controller",
]
