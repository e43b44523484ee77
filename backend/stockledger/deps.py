"""Request-scoped dependencies shared by the routers."""

from fastapi import Header


async def get_actor(x_actor: str | None = Header(default=None)) -> str | None:
    """Identity of the caller as forwarded by the auth layer in front of us.

    Only recorded on movements and activity log entries; never checked.
    """
    if x_actor:
        return x_actor.strip()[:100] or None
    return None
