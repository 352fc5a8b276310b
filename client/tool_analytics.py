"""
Per-tool analytics helper.

Tools create one ToolAnalytics when they start and call track_usage()
or track_action() as the user works. Calls are queued on the client's
background worker, so they never block or fail the tool itself.
"""

from typing import Optional

from .analytics_client import AnalyticsClient


class ToolAnalytics:
    """Usage reporting bound to a single tool."""

    def __init__(
        self,
        tool_id: str,
        tool_name: str,
        client: Optional[AnalyticsClient] = None,
        track_on_create: bool = True,
    ):
        self.tool_id = tool_id
        self.tool_name = tool_name
        self.client = client or AnalyticsClient.get_instance()
        if track_on_create:
            self.track_usage()

    @property
    def session_id(self) -> str:
        return self.client.get_session_id()

    def track_usage(self) -> None:
        self.client.dispatch(self.tool_id, self.tool_name)

    def track_action(self, action: str) -> None:
        """Report an action as its own tool id, e.g. "qr-generator_download"."""
        self.client.dispatch(f"{self.tool_id}_{action}", f"{self.tool_name} - {action}")
