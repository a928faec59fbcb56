from __future__ import annotations

import asyncio
import base64
import time
from dataclasses import dataclass, field
from typing import Callable

import requests
from loguru import logger
from solders.keypair import Keypair
from solders.transaction import Transaction, VersionedTransaction

from kryptos_keeper.aggregators import jupiter
from kryptos_keeper.config import AppSettings
from kryptos_keeper.errors import SwapError, SwapErrorKind
from kryptos_keeper.models import ExecutionQuote, SwapFill, SwapOutcome

SUCCESS = "Success"


def sign_transaction(payload_b64: str, keypair: Keypair) -> tuple[str, str]:
    """Sign an aggregator-built transaction. Returns (signed base64, signature)."""
    raw = base64.b64decode(payload_b64)
    try:
        vtx = VersionedTransaction.from_bytes(raw)
        signed = VersionedTransaction(vtx.message, [keypair])
        return base64.b64encode(bytes(signed)).decode(), str(signed.signatures[0])
    except Exception:
        # Legacy (non-versioned) payload
        tx = Transaction.from_bytes(raw)
        tx.partial_sign([keypair], tx.message.recent_blockhash)
        return base64.b64encode(bytes(tx)).decode(), str(tx.signatures[0])


def _failed(kind: SwapErrorKind, message: str, quote: ExecutionQuote | None = None) -> SwapOutcome:
    return SwapOutcome(error=SwapError(kind, message), quote=quote)


@dataclass
class SwapExecutor:
    """Quote, sign and submit a single swap through Jupiter Ultra.

    Failures come back as a SwapOutcome carrying a SwapError; nothing on the ledger is
    touched here, so a failed swap leaves the vault exactly as it was.
    """

    settings: AppSettings
    keypair: Keypair
    order_fn: Callable = jupiter.get_order
    execute_fn: Callable = jupiter.execute_order
    clock: Callable[[], float] = field(default=time.time)

    @property
    def taker(self) -> str:
        return str(self.keypair.pubkey())

    async def quote(self, input_token: str, output_token: str, amount: int) -> ExecutionQuote | None:
        order = await asyncio.to_thread(
            self.order_fn,
            self.settings.jupiter_ultra_url,
            input_mint=input_token,
            output_mint=output_token,
            amount=amount,
            taker=self.taker,
            timeout=self.settings.http_timeout_sec,
        )
        if not order:
            return None
        return ExecutionQuote(
            input_token=input_token,
            output_token=output_token,
            input_amount=int(order.get("inAmount") or amount),
            expected_output_amount=int(order.get("outAmount") or 0),
            route_id=str(order["requestId"]),
            valid_until=self.clock() + self.settings.quote_ttl_sec,
            transaction_payload=order["transaction"],
        )

    async def execute(
        self,
        input_token: str,
        output_token: str,
        amount: int,
        on_signed: Callable[[str, str], None] | None = None,
    ) -> SwapOutcome:
        try:
            quote = await self.quote(input_token, output_token, amount)
        except requests.RequestException as e:
            return _failed(SwapErrorKind.QUOTE_UNAVAILABLE, str(e))
        if quote is None:
            return _failed(SwapErrorKind.QUOTE_UNAVAILABLE, "no route")
        logger.debug(
            "Quote {} {} -> {} {} (request {})",
            quote.input_amount,
            input_token[:8],
            quote.expected_output_amount,
            output_token[:8],
            quote.route_id,
        )

        if self.settings.dry_run:
            return SwapOutcome(quote=quote)

        try:
            signed_b64, signature = sign_transaction(quote.transaction_payload, self.keypair)
        except Exception as e:
            return _failed(SwapErrorKind.SIGNING_FAILED, str(e), quote)

        if self.clock() > quote.valid_until:
            return _failed(SwapErrorKind.QUOTE_EXPIRED, f"request {quote.route_id}", quote)

        if on_signed is not None:
            on_signed(signature, quote.route_id)

        try:
            result = await asyncio.wait_for(
                asyncio.to_thread(
                    self.execute_fn,
                    self.settings.jupiter_ultra_url,
                    signed_b64,
                    quote.route_id,
                    timeout=self.settings.swap_timeout_sec,
                ),
                timeout=self.settings.swap_timeout_sec,
            )
        except asyncio.TimeoutError:
            return _failed(SwapErrorKind.TIMEOUT, f"no result after {self.settings.swap_timeout_sec}s", quote)
        except requests.Timeout as e:
            return _failed(SwapErrorKind.TIMEOUT, str(e), quote)
        except requests.RequestException as e:
            return _failed(SwapErrorKind.SUBMIT_FAILED, str(e), quote)

        if result.get("status") != SUCCESS:
            msg = result.get("error") or result.get("code") or result.get("status") or "unknown"
            return _failed(SwapErrorKind.EXECUTION_FAILED, str(msg), quote)

        fill = SwapFill(
            signature=result.get("signature") or signature,
            input_amount=int(result.get("inputAmountResult") or quote.input_amount),
            output_amount=int(result.get("outputAmountResult") or quote.expected_output_amount),
        )
        return SwapOutcome(fill=fill, quote=quote)
