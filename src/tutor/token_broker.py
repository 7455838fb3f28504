"""Ephemeral credential issuance.

Exchanges the long-lived server secret for a short-lived, session-scoped
client secret so the server secret never reaches the client that talks to
the speech engine.
"""

import json
import logging
from typing import Any

import aiohttp

from src.tutor.config import OpenAIConfig
from src.tutor.errors import ConfigError, UpstreamError

logger = logging.getLogger(__name__)


class TokenBroker:
    """Issues ephemeral realtime credentials.

    Attributes:
        config: Engine configuration (secret, base URL, model, voice)
        timeout_s: Request timeout for the issuing service
    """

    def __init__(
        self,
        config: OpenAIConfig,
        timeout_s: float = 15.0,
        http_session: aiohttp.ClientSession | None = None,
    ) -> None:
        """Initialize token broker.

        Args:
            config: Engine configuration
            timeout_s: Request timeout in seconds
            http_session: Optional shared client session (one per call otherwise)
        """
        self.config = config
        self.timeout_s = timeout_s
        self._http_session = http_session

    @property
    def endpoint(self) -> str:
        return f"{self.config.base_url}/realtime/client_secrets"

    def _payload(self) -> dict[str, Any]:
        session: dict[str, Any] = {"type": "realtime", "model": self.config.realtime_model}
        if self.config.voice:
            session["audio"] = {"output": {"voice": self.config.voice}}
        return {"session": session}

    async def request_ephemeral_credential(self) -> str:
        """Request a short-lived credential.

        Returns:
            Ephemeral client secret

        Raises:
            ConfigError: If the server secret is not configured
            UpstreamError: If the issuing service rejects the request,
                times out, or returns no token
        """
        if not self.config.api_key:
            raise ConfigError("Missing OPENAI_API_KEY (server secret not configured)")

        headers = {
            "Authorization": f"Bearer {self.config.api_key}",
            "Content-Type": "application/json",
        }

        session = self._http_session or aiohttp.ClientSession()
        try:
            async with session.post(
                self.endpoint,
                json=self._payload(),
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self.timeout_s),
            ) as resp:
                text = await resp.text()
                status = resp.status
        except TimeoutError as e:
            raise UpstreamError("Credential request timed out") from e
        except aiohttp.ClientError as e:
            raise UpstreamError(f"Credential request failed: {e}") from e
        finally:
            if self._http_session is None:
                await session.close()

        data = _loads_or_none(text)

        if status >= 400:
            message = "Failed to create client secret"
            if isinstance(data, dict) and isinstance(data.get("error"), dict):
                message = data["error"].get("message") or message
            logger.warning(
                "Credential request rejected",
                extra={"status": status, "error": message},
            )
            raise UpstreamError(message, status=status, body=data if data is not None else text)

        value = None
        if isinstance(data, dict):
            client_secret = data.get("client_secret")
            if isinstance(client_secret, dict):
                value = client_secret.get("value")
            value = value or data.get("value")

        if not isinstance(value, str) or not value:
            raise UpstreamError("Token missing in credential response", status=status, body=data)

        logger.info("Ephemeral credential issued", extra={"model": self.config.realtime_model})
        return value


def _loads_or_none(text: str) -> Any:
    try:
        return json.loads(text) if text else None
    except ValueError:
        return None


class HttpTokenBroker:
    """Fetches ephemeral credentials from this project's ``/api/realtime``.

    Clients use this so the long-lived secret stays on the server.
    """

    def __init__(
        self,
        endpoint_url: str,
        timeout_s: float = 15.0,
        http_session: aiohttp.ClientSession | None = None,
    ) -> None:
        self.endpoint_url = endpoint_url
        self.timeout_s = timeout_s
        self._http_session = http_session

    async def request_ephemeral_credential(self) -> str:
        session = self._http_session or aiohttp.ClientSession()
        try:
            async with session.post(
                self.endpoint_url,
                timeout=aiohttp.ClientTimeout(total=self.timeout_s),
            ) as resp:
                text = await resp.text()
                status = resp.status
        except TimeoutError as e:
            raise UpstreamError("Credential request timed out") from e
        except aiohttp.ClientError as e:
            raise UpstreamError(f"Credential request failed: {e}") from e
        finally:
            if self._http_session is None:
                await session.close()

        data = _loads_or_none(text)
        if status >= 400:
            message = "Failed to get ephemeral key"
            if isinstance(data, dict) and isinstance(data.get("error"), dict):
                message = data["error"].get("message") or message
            raise UpstreamError(message, status=status, body=data if data is not None else text)

        value = data.get("value") if isinstance(data, dict) else None
        if not isinstance(value, str) or not value:
            raise UpstreamError("Token missing in credential response", status=status, body=data)
        return value
