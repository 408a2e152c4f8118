import asyncio
import logging
from typing import Optional

import aiohttp

logger = logging.getLogger(__name__)


class GameAgentClient:
    """Client for the management agent running inside the game VM.

    Every call is bounded by the timeout it is given. Transport failures
    are reported as ``False``/``None`` and never raised, so callers can
    treat an unreachable agent as "not ready" without extra handling.
    """

    def __init__(self, api_prefix: str = "/api"):
        self.api_prefix = api_prefix

    def _url(self, base_url: str, endpoint: str) -> str:
        return f"{base_url.rstrip('/')}{self.api_prefix}/{endpoint.lstrip('/')}"

    async def check_health(self, base_url: str, timeout: float) -> bool:
        """
        Probe the agent's liveness endpoint

        Args:
            base_url: Agent base URL (scheme, host and port)
            timeout: Total time allowed for the probe in seconds

        Returns:
            True for any 2xx response, False otherwise
        """
        try:
            async with aiohttp.ClientSession() as session:
                async with session.get(
                    self._url(base_url, "health"),
                    timeout=aiohttp.ClientTimeout(total=timeout),
                ) as response:
                    return 200 <= response.status < 300
        except asyncio.TimeoutError:
            logger.debug(f"Health probe to {base_url} timed out after {timeout}s")
            return False
        except Exception as e:
            logger.debug(f"Health probe to {base_url} failed: {e}")
            return False

    async def get_player_count(self, base_url: str, timeout: float) -> Optional[int]:
        """
        Fetch the number of players online

        Args:
            base_url: Agent base URL
            timeout: Total time allowed for the request in seconds

        Returns:
            Player count, or None when the agent could not be reached or
            answered with a non-2xx status
        """
        try:
            async with aiohttp.ClientSession() as session:
                async with session.get(
                    self._url(base_url, "player-count"),
                    timeout=aiohttp.ClientTimeout(total=timeout),
                ) as response:
                    if not 200 <= response.status < 300:
                        logger.debug(
                            f"Player count request returned status {response.status}"
                        )
                        return None
                    data = await response.json()
                    try:
                        return max(0, int(data.get("count") or 0))
                    except (TypeError, ValueError):
                        logger.warning(f"Malformed player count payload: {data!r}")
                        return None
        except asyncio.TimeoutError:
            logger.debug(f"Player count request to {base_url} timed out")
            return None
        except Exception as e:
            logger.debug(f"Player count request to {base_url} failed: {e}")
            return None

    async def request_shutdown(self, base_url: str, timeout: float) -> bool:
        """
        Ask the agent to stop the game process before power-off

        Returns:
            True if the agent acknowledged with a 2xx response
        """
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    self._url(base_url, "shutdown"),
                    json={},
                    timeout=aiohttp.ClientTimeout(total=timeout),
                ) as response:
                    if 200 <= response.status < 300:
                        logger.info("Game agent shutdown completed gracefully")
                        return True
                    logger.warning(
                        f"Game agent shutdown returned status {response.status}"
                    )
                    return False
        except asyncio.TimeoutError:
            logger.warning(f"Game agent shutdown timed out after {timeout}s")
            return False
        except Exception as e:
            logger.warning(f"Could not reach game agent for graceful shutdown: {e}")
            return False
