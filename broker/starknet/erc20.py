"""
ERC20 Transfer matching over receipt events.

Two Cairo event layouts exist in the wild:
  OZ Cairo 1:  keys=[selector, from, to]  data=[amount_low, amount_high]
  legacy:      keys=[selector]            data=[from, to, amount_low, amount_high]
"""

from dataclasses import dataclass
from typing import Iterable, Optional

from starknet_py.hash.selector import get_selector_from_name

from broker.starknet.address import normalize_address
from broker.starknet.receipts import ReceiptEvent

TRANSFER_SELECTOR = get_selector_from_name("Transfer")


@dataclass
class TransferMatch:
    token_address: str
    sender: str
    recipient: str
    amount: int


def uint256(low: int, high: int) -> int:
    return low + (high << 128)


def find_erc20_transfer(
    events: Iterable[ReceiptEvent], token_address: str, to_address: str,
) -> Optional[TransferMatch]:
    """First Transfer of token_address into to_address, or None."""
    token = normalize_address(token_address)
    to = normalize_address(to_address)
    if not token or not to:
        return None

    for ev in events:
        if ev.from_address != token:
            continue
        if not ev.keys or ev.keys[0] != TRANSFER_SELECTOR:
            continue

        if len(ev.keys) >= 3 and len(ev.data) >= 2:
            sender, recipient = ev.keys[1], ev.keys[2]
            amount = uint256(ev.data[0], ev.data[1])
        elif len(ev.data) >= 4:
            sender, recipient = ev.data[0], ev.data[1]
            amount = uint256(ev.data[2], ev.data[3])
        else:
            continue

        if normalize_address(recipient) != to:
            continue
        return TransferMatch(token, normalize_address(sender), to, amount)

    return None
