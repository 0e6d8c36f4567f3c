"""Credential resolution for CLI commands."""

from typing import Any

from .api import SpeleoDBClient
from .config import config
from .exceptions import SpeleoDBError
from .output import OutputFormatter


def require_credentials(ctx: Any, out: OutputFormatter) -> dict[str, str]:
    """Resolve one credential form from the command line or the config.

    An OAuth token wins over email/password when both are available.

    Returns:
        Keyword arguments for SpeleoDBClient.authenticate()
    """
    oauth_token = ctx.obj.get("oauth_token") or config.oauth_token
    if oauth_token:
        return {"oauth_token": oauth_token}

    email = ctx.obj.get("email") or config.email
    password = ctx.obj.get("password") or config.password
    if email and password:
        return {"email": email, "password": password}

    out.error(
        "No credentials configured. Run 'speleodb init' or set "
        "SPELEODB_OAUTH_TOKEN (or SPELEODB_EMAIL and SPELEODB_PASSWORD)."
    )
    ctx.exit(1)
    return {}


def login(ctx: Any, out: OutputFormatter) -> SpeleoDBClient:
    """Create a client and authenticate it, or exit with an error."""
    credentials = require_credentials(ctx, out)
    client = SpeleoDBClient(instance=ctx.obj.get("instance"))
    try:
        client.authenticate(**credentials)
    except SpeleoDBError as e:
        client.close()
        out.error(f"Login failed: {e}")
        ctx.exit(1)
    return client
