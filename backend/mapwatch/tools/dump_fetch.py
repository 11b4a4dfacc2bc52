"""Download a server's map dump with a hard timeout."""

import httpx
from loguru import logger

from mapwatch.config import settings
from mapwatch.errors import FetchError

_HEADERS = {"Accept": "text/plain, application/sql, */*", "User-Agent": "mapwatch/0.1"}


async def fetch_dump(
    url: str,
    *,
    timeout: float | None = None,
    client: httpx.AsyncClient | None = None,
) -> bytes:
    """Fetch raw dump bytes. Every failure surfaces as FetchError; no retries here."""
    timeout = timeout if timeout is not None else settings.fetch_timeout_seconds
    owns_client = client is None
    if client is None:
        client = httpx.AsyncClient(headers=_HEADERS, follow_redirects=True)
    logger.debug("[fetch] GET {} (timeout {}s)", url, timeout)
    try:
        resp = await client.get(url, timeout=timeout)
        resp.raise_for_status()
        data = resp.content
    except httpx.TimeoutException as e:
        raise FetchError(f"Timed out after {timeout}s fetching {url}", url=url) from e
    except httpx.HTTPStatusError as e:
        code = e.response.status_code
        raise FetchError(f"HTTP {code} fetching {url}", url=url, status_code=code) from e
    except (httpx.HTTPError, httpx.InvalidURL) as e:
        raise FetchError(f"Could not fetch {url}: {e}", url=url) from e
    finally:
        if owns_client:
            await client.aclose()

    logger.info("[fetch] {} bytes from {}", len(data), url)
    return data
