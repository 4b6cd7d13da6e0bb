#Purpose: The push-notification "adapter/client".
#Sole responsibility: hand a notification to the push gateway via HTTP.
#Encapsulates gateway-specific details:
#URL construction and auth header
#timeouts and error handling
#It should not contain dispatch rules. Delivery guarantees and transport
#retries belong to the gateway, not to this client.

from dotenv import load_dotenv
import os
from typing import Any, Dict, List, Optional
import requests

from .errors import TransportFailure

# Read push gateway settings from environment
# Example in .env:
# PUSH_NOTIFICATION_URL=https://push.example.org/functions/v1/send-push-notification
# PUSH_NOTIFICATION_KEY=...
load_dotenv()
PUSH_NOTIFICATION_URL = os.getenv("PUSH_NOTIFICATION_URL")
PUSH_NOTIFICATION_KEY = os.getenv("PUSH_NOTIFICATION_KEY")
PUSH_TIMEOUT_SECONDS = float(os.getenv("PUSH_TIMEOUT_SECONDS", "5"))


class PushClient:
    """
    Push gateway adapter / client

    Sole responsibility:
    - POST a notification for a list of recipients
    - Turn HTTP and connection errors into TransportFailure

    """
    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: float = PUSH_TIMEOUT_SECONDS,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url or PUSH_NOTIFICATION_URL
        self.api_key = api_key or PUSH_NOTIFICATION_KEY
        self.timeout = timeout #the time to wait for the gateway before giving up
        self.session = session or requests.Session()

        if not self.base_url:
            raise ValueError("Push gateway URL not set. Please set PUSH_NOTIFICATION_URL in the .env file.")

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def send(
        self,
        recipient_ids: List[str],
        title: str,
        body: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Fire one push for all recipients.

        Returns:
            the gateway's JSON answer ({} when it sends none)
        Raises:
            TransportFailure on connection errors, timeouts and non-2xx answers
        """
        if not recipient_ids:
            return {}

        try:
            response = self.session.post(
                self.base_url,
                json={
                    "recipient_ids": list(recipient_ids),
                    "title": title,
                    "body": body,
                    "data": data or {},
                },
                headers=self._headers(),
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise TransportFailure(f"Push gateway unreachable: {exc}") from exc

        if response.status_code >= 400:
            raise TransportFailure(f"Push gateway returned {response.status_code}: {response.text[:200]}")

        try:
            return response.json()
        except ValueError:
            return {}
