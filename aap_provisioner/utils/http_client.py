"""HTTP client utilities for making async HTTP requests"""

import asyncio
from typing import Any

import aiohttp

from ..utils.logger import get_logger

logger = get_logger(__name__)


async def send_request(
    method: str,
    url: str,
    data: dict[str, Any] | None = None,
    timeout: int = 30,
    headers: dict[str, str] | None = None,
    auth: tuple[str, str] | None = None,
    verify_ssl: bool = True,
    params: dict[str, Any] | None = None,
) -> tuple[bool, int | None, str]:
    """
    Send an async HTTP request to URL

    Args:
        method: HTTP method (GET, POST, PATCH, DELETE)
        url: Target URL
        data: JSON data to send, if any
        timeout: Request timeout in seconds (default: 30)
        headers: Optional HTTP headers
        auth: Optional (username, password) for basic auth
        verify_ssl: Set False to skip TLS certificate verification
        params: Optional query string parameters

    Returns:
        Tuple of (success: bool, status_code: int | None, response_text: str)
    """
    if not url:
        logger.warning(f"Empty URL provided to {method} request")
        return False, None, "Empty URL"

    basic_auth = aiohttp.BasicAuth(auth[0], auth[1]) if auth else None

    try:
        async with aiohttp.ClientSession() as session:
            async with session.request(
                method,
                url,
                json=data,
                params=params,
                headers=headers,
                auth=basic_auth,
                ssl=verify_ssl,
                timeout=aiohttp.ClientTimeout(total=timeout),
            ) as response:
                response_text = await response.text()
                success = 200 <= response.status < 300

                if success:
                    logger.debug(
                        f"{method} request successful | URL: {url} | Status: {response.status}"
                    )
                else:
                    logger.warning(
                        f"{method} request failed | URL: {url} | Status: {response.status} | Response: {response_text[:200]}"
                    )

                return success, response.status, response_text

    except asyncio.TimeoutError:
        logger.error(f"{method} request timeout after {timeout}s | URL: {url}")
        return False, None, f"Timeout after {timeout}s"

    except aiohttp.ClientError as e:
        logger.error(f"{method} request client error | URL: {url} | Error: {e}")
        return False, None, f"Client error: {str(e)}"


async def send_post_request(
    url: str,
    data: dict[str, Any],
    timeout: int = 30,
    headers: dict[str, str] | None = None,
    auth: tuple[str, str] | None = None,
    verify_ssl: bool = True,
) -> tuple[bool, int | None, str]:
    """Send async POST request to URL, see send_request"""
    return await send_request(
        "POST",
        url,
        data=data,
        timeout=timeout,
        headers=headers,
        auth=auth,
        verify_ssl=verify_ssl,
    )


async def send_get_request(
    url: str,
    timeout: int = 30,
    headers: dict[str, str] | None = None,
    auth: tuple[str, str] | None = None,
    verify_ssl: bool = True,
    params: dict[str, Any] | None = None,
) -> tuple[bool, int | None, str]:
    """Send async GET request to URL, see send_request"""
    return await send_request(
        "GET",
        url,
        timeout=timeout,
        headers=headers,
        auth=auth,
        verify_ssl=verify_ssl,
        params=params,
    )
