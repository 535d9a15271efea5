"""UAA client fetching the bearer token the firehose requires."""

import asyncio
import logging

import aiohttp

from ..errors import AuthError


logger = logging.getLogger(__name__)

# Public CF CLI client, allowed to use the password grant
UAA_CLIENT_ID = "cf"


class UAATokenFetcher:
    """Fetches '<token_type> <access_token>' via the OAuth2 password grant."""

    def __init__(
        self,
        uaa_url: str,
        username: str,
        password: str,
        insecure_ssl_skip_verify: bool = False,
        request_timeout_seconds: float = 30,
    ):
        self.uaa_url = uaa_url.rstrip("/")
        self.username = username
        self.password = password
        self.insecure_ssl_skip_verify = insecure_ssl_skip_verify
        self.request_timeout_seconds = request_timeout_seconds

    async def fetch_auth_token(self) -> str:
        """
        Raises:
            AuthError: If UAA is unreachable or rejects the credentials
        """
        url = f"{self.uaa_url}/oauth/token"
        form = {
            "grant_type": "password",
            "username": self.username,
            "password": self.password,
            "client_id": UAA_CLIENT_ID,
        }

        logger.debug(f"Fetching auth token from {url}")

        try:
            async with aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.request_timeout_seconds)
            ) as session:
                async with session.post(
                    url,
                    data=form,
                    auth=aiohttp.BasicAuth(UAA_CLIENT_ID, ""),
                    headers={"Accept": "application/json"},
                    ssl=not self.insecure_ssl_skip_verify,
                ) as response:
                    if response.status != 200:
                        body = await response.text()
                        raise AuthError(f"UAA returned HTTP {response.status}: {body}")
                    payload = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise AuthError(f"Unable to fetch auth token from {url}: {e}") from e

        token_type = payload.get("token_type", "")
        access_token = payload.get("access_token")
        if not access_token:
            raise AuthError("UAA response did not contain an access token")

        logger.info("Fetched auth token from UAA")
        return f"{token_type} {access_token}"
