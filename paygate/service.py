"""Example paid endpoint: fetch a page through the rotating proxy.

Fork the template and replace ``fetch_page`` with real scraping logic. The
gate settles payment before the handler runs, so anything raised here is a
delivery failure (502), never a payment failure.
"""

import html
import logging
import re
from decimal import Decimal
from typing import Any, Dict, Optional
from urllib.parse import urlparse

import httpx

from paygate.config import ProxyConfig
from paygate.gate import ServiceError, SettlementContext
from paygate.schemas import PriceSpec

logger = logging.getLogger(__name__)

SERVICE_NAME = "proxy-page-fetcher"
RESOURCE = "/api/run"
PRICE = PriceSpec(amount=Decimal("0.005"))
DESCRIPTION = "Fetch any public web page through a mobile proxy and return its metadata."
USER_AGENT = (
    "Mozilla/5.0 (Linux; Android 14; Pixel 8) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/126.0 Mobile Safari/537.36"
)
FETCH_TIMEOUT_SECONDS = 20.0

OUTPUT_SCHEMA = {
    "input": {
        "url": "string: absolute http(s) URL to fetch (required)",
    },
    "output": {
        "url": "string: requested URL",
        "finalUrl": "string: URL after redirects",
        "statusCode": "number: upstream HTTP status",
        "contentType": "string|null: upstream Content-Type",
        "title": "string|null: page <title>",
        "bytes": "number: body size in bytes",
        "proxy": '{ country: string, type: "mobile" }',
    },
}

_TITLE = re.compile(r"<title[^>]*>(.*?)</title>", re.IGNORECASE | re.DOTALL)


def validate_url(url: Optional[str]) -> Optional[str]:
    """Return an error message for an unusable target URL, or None."""
    if not url:
        return "Missing required parameter: ?url=<page_url>"
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return "Invalid url parameter. Use an absolute http(s) URL."
    return None


def extract_title(body: str) -> Optional[str]:
    match = _TITLE.search(body)
    if not match:
        return None
    title = " ".join(html.unescape(match.group(1)).split())
    return title or None


async def fetch_page(
    url: str,
    proxy: ProxyConfig,
    settlement: SettlementContext,
    client: Optional[httpx.AsyncClient] = None,
) -> Dict[str, Any]:
    owns_client = client is None
    if client is None:
        client = httpx.AsyncClient(
            proxy=proxy.url,
            timeout=FETCH_TIMEOUT_SECONDS,
            follow_redirects=True,
            headers={"User-Agent": USER_AGENT},
        )
    try:
        response = await client.get(url)
    except httpx.HTTPError as e:
        logger.warning(f"Fetch failed for {url} (payment {settlement.payment.replay_key}): {e}")
        raise ServiceError(
            f"Failed to fetch {url}: {e!s}",
            hint="The proxy or target site may be temporarily unavailable.",
        ) from e
    finally:
        if owns_client:
            await client.aclose()

    if response.status_code >= 500:
        raise ServiceError(
            f"Upstream returned HTTP {response.status_code}",
            hint="The target site may be blocking requests. Try again later.",
        )

    content_type = response.headers.get("content-type")
    title = None
    if content_type and "html" in content_type.lower():
        title = extract_title(response.text)

    return {
        "url": url,
        "finalUrl": str(response.url),
        "statusCode": response.status_code,
        "contentType": content_type,
        "title": title,
        "bytes": len(response.content),
        "proxy": {"country": proxy.country, "type": "mobile"},
    }
