"""
Request validators for the order endpoints.
Each returns (valid, reason); reason is None when valid.
"""

from broker.starknet.address import SHORT_STRING_MAX_LEN, is_short_string
from broker.starknet.tokens import DUNGEON_IDS, PAY_TOKENS

MIN_ADDRESS_LEN = 3
MIN_TX_HASH_LEN = 3


def validate_create_order(req: dict) -> tuple:
    """Validate a create-order body. Returns (valid, reason)."""
    if not isinstance(req, dict):
        return False, "Body must be a JSON object"

    dungeon_id = req.get("dungeonId", DUNGEON_IDS[0])
    if dungeon_id not in DUNGEON_IDS:
        return False, f"Unknown dungeonId: {dungeon_id}"

    pay_token = req.get("payToken")
    if not pay_token:
        return False, "Missing 'payToken'"
    if pay_token not in PAY_TOKENS:
        return False, f"Unsupported payToken: {pay_token} (expected one of {', '.join(PAY_TOKENS)})"

    recipient = req.get("recipientAddress")
    if not isinstance(recipient, str) or len(recipient.strip()) < MIN_ADDRESS_LEN:
        return False, "Missing or too short 'recipientAddress'"

    name = req.get("playerName")
    if not isinstance(name, str) or not name:
        return False, "Missing 'playerName'"
    if len(name) > SHORT_STRING_MAX_LEN:
        return False, f"playerName must be at most {SHORT_STRING_MAX_LEN} characters"
    if not is_short_string(name):
        return False, "playerName must be ASCII"

    return True, None


def validate_submit_payment(req: dict) -> tuple:
    """Validate a submit-payment body. Returns (valid, reason)."""
    if not isinstance(req, dict):
        return False, "Body must be a JSON object"
    tx_hash = req.get("txHash")
    if not isinstance(tx_hash, str) or len(tx_hash.strip()) < MIN_TX_HASH_LEN:
        return False, "Missing or too short 'txHash'"
    return True, None
