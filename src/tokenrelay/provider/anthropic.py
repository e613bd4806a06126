from typing import Any

import httpx
import structlog

from tokenrelay.config import Config

logger = structlog.get_logger()

USAGE_PATH = "/v1/usage"

# shown when the provider refuses the usage report
UNAVAILABLE_NOTE = (
    "The provider usage API requires a workspace admin key. Standard keys "
    "are refused; the relay's own logs are the reliable source."
)


class AnthropicUsageClient:
    """
    AnthropicUsageClient asks the provider for its own usage report.
    This is a best-effort secondary source: a refusal is reported as
    unavailable rather than raised, since most keys lack access.
    """

    def __init__(
        self,
        config: "Config",
        client: "httpx.AsyncClient | None" = None,
    ) -> "None":
        self._config = config
        self._url = config.anthropic_base_url.rstrip("/") + USAGE_PATH
        self._client: "httpx.AsyncClient" = client or httpx.AsyncClient(timeout=10.0)

    async def close(self) -> "None":
        """
        closes the underlying HTTP client.
        """
        await self._client.aclose()

    async def fetch_usage(self, start_date: "str") -> "dict[str, Any]":
        """
        fetches the usage report starting at `start_date` (YYYY-MM-DD).
        Transport errors propagate; HTTP refusals do not.
        """
        logger.debug("anthropic_fetch_usage", start_date=start_date)
        resp = await self._client.get(
            self._url,
            params={"start_date": start_date},
            headers={
                "anthropic-version": self._config.anthropic_version,
                "x-api-key": self._config.anthropic_api_key,
            },
        )

        try:
            data = resp.json()
        except ValueError:
            data = resp.text

        if resp.status_code == 403:
            logger.debug("anthropic_usage_forbidden")

        if not resp.is_success:
            return {
                "available": False,
                "status": resp.status_code,
                "note": UNAVAILABLE_NOTE,
                "error": data,
            }

        return {"available": True, "data": data}
