"""Contract deployment block detection.

Binary search over `eth_getCode`: the deployment block is the first block at
which the address has non-empty code.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from token_holder_indexer.chain.provider import ProviderManager

logger = logging.getLogger(__name__)


async def find_deployment_block(
    provider: ProviderManager,
    address: str,
    *,
    low: int = 0,
    high: int | None = None,
) -> int | None:
    """Return the first block with code at `address`, or None if there is none.

    Requires an archive-capable endpoint for historical `eth_getCode`.
    """
    if high is None:
        high = await provider.get_block_number()
    if low > high:
        raise ValueError("low must be <= high")

    if not await provider.get_code(address, high):
        return None

    while low < high:
        mid = (low + high) // 2
        if await provider.get_code(address, mid):
            high = mid
        else:
            low = mid + 1

    logger.info("Contract %s deployed at block %d", address.lower(), low)
    return low
