"""OpenAI-compatible client factory for the language-model extraction capability.

Also serves local OpenAI-compatible servers (Ollama, LM Studio) through ``base_url``.
"""

import os
from typing import Any, Optional

from loguru import logger
from openai import OpenAI

# Local servers ignore the key but the client refuses to start without one.
LOCAL_SERVER_API_KEY = "ollama"


def create_openai_client(
    api_key: Optional[str] = None,
    base_url: Optional[str] = None,
    timeout: Optional[float] = None,
    max_retries: int = 0,
    **kwargs: Any,
) -> OpenAI:
    """Create an OpenAI client.

    Args:
        api_key: Explicit key; falls back to ``OPENAI_API_KEY``
        base_url: Explicit endpoint; falls back to ``OPENAI_BASE_URL``
        timeout: Request timeout in seconds
        max_retries: Client-level retries (the capability retries on its own)
        **kwargs: Passed through to :class:`openai.OpenAI`

    Returns:
        Configured OpenAI client.
    """
    final_base_url = base_url or os.getenv("OPENAI_BASE_URL")
    final_api_key = api_key or os.getenv("OPENAI_API_KEY")
    if final_api_key is None and final_base_url:
        final_api_key = LOCAL_SERVER_API_KEY

    masked_key = (
        f"{final_api_key[:4]}...{final_api_key[-4:]}"
        if final_api_key and len(final_api_key) > 8
        else "None"
    )
    logger.debug(
        "Creating OpenAI client",
        base_url=final_base_url,
        api_key=masked_key,
        timeout=timeout,
    )

    return OpenAI(
        api_key=final_api_key,
        base_url=final_base_url,
        timeout=timeout,
        max_retries=max_retries,
        **kwargs,
    )
