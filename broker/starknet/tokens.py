"""
Mainnet token registry — pay tokens, the ticket token and the dungeon.
Addresses are normalized at import; a typo fails the process on startup.
"""

from dataclasses import dataclass
from typing import Dict, List

from broker.starknet.address import require_normalized_address


@dataclass(frozen=True)
class PayToken:
    symbol: str
    address: str
    decimals: int

    def to_dict(self) -> dict:
        return {"symbol": self.symbol, "address": self.address, "decimals": self.decimals}


TICKET_TOKEN_ADDRESS: str = require_normalized_address(
    "0x0452810188C4Cb3AEbD63711a3b445755BC0D6C4f27B923fDd99B1A118858136", "ticket",
)
SURVIVOR_DUNGEON_ADDRESS: str = require_normalized_address(
    "0x00a67ef20b61a9846e1c82b411175e6ab167ea9f8632bd6c2091823c3629ec42", "survivor dungeon",
)

# Only dungeon currently sold
DUNGEON_IDS = ("survivor",)
DEFAULT_DUNGEON_ID = "survivor"


def _token(symbol: str, address: str, decimals: int) -> PayToken:
    return PayToken(symbol, require_normalized_address(address, symbol), decimals)


PAY_TOKENS: Dict[str, PayToken] = {
    "LORDS": _token("LORDS", "0x0124aeb495b947201f5fac96fd1138e326ad86195b98df6dec9009158a533b49", 18),
    "ETH": _token("ETH", "0x049d36570d4e46f48e99674bd3fcc84644ddd6b96f7c741b1562b82f9e004dc7", 18),
    "STRK": _token("STRK", "0x04718f5a0fc34cc1af16a1cdee98ffb20c31f5cd61d6ab07201858f4287c938d", 18),
    "USDC_E": _token("USDC_E", "0x053c91253bc9682c04929ca02ed00b3e423f6710d2ee7e0d5ebb06f3ecf368a8", 6),
    "USDC": _token("USDC", "0x033068F6539f8e6e6b131e6B2B814e6c34A5224bC66947c47DaB9dFeE93b35fb", 6),
    "SURVIVOR": _token("SURVIVOR", "0x042DD777885AD2C116be96d4D634abC90A26A790ffB5871E037Dd5Ae7d2Ec86B", 18),
}

# Intermediate settlement token for restocking: sell X -> LORDS -> TICKET
LORDS: PayToken = PAY_TOKENS["LORDS"]

# Tokens the treasury may sell to acquire LORDS (everything but LORDS)
SELLABLE_TOKENS: List[PayToken] = [t for s, t in PAY_TOKENS.items() if s != LORDS.symbol]
