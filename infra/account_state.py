"""
cycletrader Infrastructure: Exchange Account State

AccountStateProvider backed by the Hyperliquid public info endpoint.
No authentication is needed to read a user's clearinghouse state.

Response shape (optionally wrapped in {"data": ...}):
    {
        "marginSummary": {"accountValue": "1234.5", "totalMarginUsed": "200.0", ...},
        "assetPositions": [
            {"position": {"coin": "BTC", "szi": "-0.5", "entryPx": "50000",
                          "leverage": {"value": 10}, "unrealizedPnl": "12.3"}}
        ]
    }
A positive szi is a LONG, a negative one a SHORT.
"""

import logging
import random
import time
from typing import Any, Dict, Optional

import requests

from core.exceptions import TransientCollaboratorError
from core.interfaces import AccountStateProvider
from core.models import AccountState, RemotePosition, Side

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.hyperliquid.xyz"
MIN_POSITION_SIZE = 1e-4


def _to_float(value: Any, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _parse_leverage(raw: Any) -> float:
    if isinstance(raw, dict):
        raw = raw.get("value")
    leverage = _to_float(raw, 1.0)
    return leverage if leverage > 0 else 1.0


def parse_user_state(payload: Dict[str, Any]) -> AccountState:
    """Translate a clearinghouseState response into an AccountState."""
    data = payload.get("data") if isinstance(payload.get("data"), dict) else payload
    summary = data.get("marginSummary") or data.get("crossMarginSummary") or {}
    account_value = _to_float(summary.get("accountValue"), 0.0) if summary else None
    margin_used = _to_float(summary.get("totalMarginUsed"), 0.0) if summary else None

    positions: Dict[str, RemotePosition] = {}
    for entry in data.get("assetPositions") or []:
        position = (entry or {}).get("position") or {}
        coin = position.get("coin")
        size = _to_float(position.get("szi"))
        if not coin or abs(size) < MIN_POSITION_SIZE:
            continue
        positions[coin] = RemotePosition(
            symbol=coin,
            side=Side.LONG if size > 0 else Side.SHORT,
            quantity=abs(size),
            entry_price=_to_float(position.get("entryPx")),
            leverage=_parse_leverage(position.get("leverage")),
            unrealized_pnl=_to_float(position.get("unrealizedPnl")),
        )

    return AccountState(account_value=account_value, open_positions=positions, margin_used=margin_used)


class HyperliquidAccountProvider(AccountStateProvider):
    """
    Reads account value and open positions for reconciliation.

    Retries on:
    - 429 (rate limit)
    - 5xx (server errors)
    - Network errors (timeout, connection)

    Does NOT retry on other 4xx responses. Any final failure raises
    TransientCollaboratorError so the cycle skips reconciliation.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 10.0,
        max_retries: int = 3,
        session: Optional[requests.Session] = None,
    ):
        self.url = base_url.rstrip("/") + "/info"
        self.timeout = timeout
        self.max_retries = max(1, int(max_retries))
        self.session = session or requests.Session()

    @classmethod
    def from_config(cls, config: Optional[Dict[str, Any]]) -> "HyperliquidAccountProvider":
        config = config or {}
        return cls(
            base_url=config.get("base_url", DEFAULT_BASE_URL),
            timeout=float(config.get("timeout_seconds", 10.0)),
            max_retries=int(config.get("max_retries", 3)),
        )

    def get_user_state(self, address: str) -> AccountState:
        body = {"type": "clearinghouseState", "user": address}
        last_error: Optional[Exception] = None

        for attempt in range(self.max_retries):
            try:
                response = self.session.post(self.url, json=body, timeout=self.timeout)
                response.raise_for_status()
                state = parse_user_state(response.json())
                logger.debug(
                    f"Account state: value={state.account_value}, positions={sorted(state.open_positions)}"
                )
                return state

            except requests.exceptions.HTTPError as e:
                status_code = e.response.status_code if e.response is not None else 0
                if 400 <= status_code < 500 and status_code != 429:
                    logger.error(f"Account state request rejected: {status_code}")
                    raise TransientCollaboratorError("account_state", e)
                logger.warning(f"Account state HTTP {status_code}, attempt {attempt + 1}/{self.max_retries}")
                last_error = e

            except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
                logger.warning(f"Network error fetching account state: {e}, attempt {attempt + 1}/{self.max_retries}")
                last_error = e

            except ValueError as e:
                raise TransientCollaboratorError("account_state: invalid JSON", e)

            if attempt < self.max_retries - 1:
                backoff = (2 ** attempt) + random.uniform(0, 1)
                logger.info(f"Retrying in {backoff:.1f}s...")
                time.sleep(backoff)

        raise TransientCollaboratorError("account_state", last_error)
