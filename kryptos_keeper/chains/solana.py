from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field

from loguru import logger
from solana.rpc.api import Client
from solana.rpc.commitment import Confirmed
from solana.rpc.types import MemcmpOpts, TxOpts
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import Transaction

from kryptos_keeper.chains import layout
from kryptos_keeper.chains.ledger import LookupStatus, OnSigned, SwapLookup
from kryptos_keeper.config import AppSettings
from kryptos_keeper.errors import LedgerError, LedgerErrorKind
from kryptos_keeper.models import DcaVaultState, IntentVaultState, SettlementOutcome, SwapFill


def token_deltas(meta: dict, owner: str) -> dict[str, int]:
    """Net token balance change per mint for `owner` from transaction meta (post - pre)."""
    pre = {b.get("accountIndex"): b for b in (meta.get("preTokenBalances") or [])}
    post = {b.get("accountIndex"): b for b in (meta.get("postTokenBalances") or [])}
    deltas: dict[str, int] = {}
    for idx in set(pre) | set(post):
        p = pre.get(idx) or {}
        q = post.get(idx) or {}
        if (q.get("owner") or p.get("owner")) != owner:
            continue
        mint = q.get("mint") or p.get("mint")
        pa = int((p.get("uiTokenAmount") or {}).get("amount") or 0)
        qa = int((q.get("uiTokenAmount") or {}).get("amount") or 0)
        deltas[mint] = deltas.get(mint, 0) + (qa - pa)
    return deltas


@dataclass
class SolanaLedger:
    settings: AppSettings
    client: Client
    keypair: Keypair
    program_id: Pubkey
    _known_token_accounts: set[str] = field(default_factory=set)

    @classmethod
    def create(cls, settings: AppSettings, keypair: Keypair) -> SolanaLedger:
        client = Client(settings.sol_rpc_url, commitment=Confirmed)
        return cls(
            settings=settings,
            client=client,
            keypair=keypair,
            program_id=Pubkey.from_string(settings.program_id),
        )

    @property
    def keeper(self) -> Pubkey:
        return self.keypair.pubkey()

    # --- reads -----------------------------------------------------------

    async def health(self) -> int:
        resp = await asyncio.to_thread(self.client.get_slot)
        return int(resp.value)

    async def keeper_balance(self) -> int:
        resp = await asyncio.to_thread(self.client.get_balance, self.keeper)
        return int(resp.value)

    def _program_accounts(self, discriminator: bytes) -> list[tuple[str, bytes]]:
        resp = self.client.get_program_accounts(
            self.program_id,
            encoding="base64",
            filters=[MemcmpOpts(offset=0, bytes=layout.discriminator_b58(discriminator))],
        )
        return [(str(acc.pubkey), bytes(acc.account.data)) for acc in resp.value]

    def _decode_all(self, discriminator: bytes, decode) -> list:
        out = []
        for address, data in self._program_accounts(discriminator):
            try:
                out.append((address, decode(data)))
            except Exception as e:  # noqa: BLE001
                logger.warning("Skipping undecodable account {}: {}", address[:8], e)
        return out

    async def fetch_all_dca_vaults(self) -> list[tuple[str, DcaVaultState]]:
        return await asyncio.to_thread(
            self._decode_all, layout.DCA_VAULT_DISCRIMINATOR, layout.decode_dca_vault
        )

    async def fetch_all_intent_vaults(self) -> list[tuple[str, IntentVaultState]]:
        return await asyncio.to_thread(
            self._decode_all, layout.INTENT_VAULT_DISCRIMINATOR, layout.decode_intent_vault
        )

    def _account_data(self, address: str) -> bytes | None:
        resp = self.client.get_account_info(Pubkey.from_string(address), encoding="base64")
        if resp.value is None:
            return None
        return bytes(resp.value.data)

    async def fetch_dca_vault(self, address: str) -> DcaVaultState | None:
        data = await asyncio.to_thread(self._account_data, address)
        return layout.decode_dca_vault(data) if data else None

    async def fetch_intent_vault(self, address: str) -> IntentVaultState | None:
        data = await asyncio.to_thread(self._account_data, address)
        return layout.decode_intent_vault(data) if data else None

    # --- writes ----------------------------------------------------------

    def _send(self, instructions: list[Instruction], on_signed: OnSigned | None = None) -> str:
        blockhash = self.client.get_latest_blockhash().value.blockhash
        msg = Message.new_with_blockhash(instructions, self.keeper, blockhash)
        tx = Transaction([self.keypair], msg, blockhash)
        if on_signed is not None:
            on_signed(str(tx.signatures[0]))
        resp = self.client.send_raw_transaction(
            bytes(tx), opts=TxOpts(skip_confirmation=False, preflight_commitment=Confirmed)
        )
        return str(resp.value)

    def _settle(self, instruction: Instruction, on_signed: OnSigned | None = None) -> SettlementOutcome:
        try:
            sig = self._send([instruction], on_signed)
        except Exception as e:
            kind = layout.classify_program_error(str(e))
            return SettlementOutcome(error=LedgerError(kind, str(e)))
        return SettlementOutcome(signature=sig)

    def _keeper_ata(self, mint: str) -> Pubkey:
        return layout.associated_token_address(self.keeper, Pubkey.from_string(mint))

    def _settle_dca_sync(
        self, address: str, swap_amount: int, received_amount: int, on_signed: OnSigned | None = None
    ) -> SettlementOutcome:
        vault = self._account_data(address)
        if vault is None:
            return SettlementOutcome(error=LedgerError(LedgerErrorKind.INVALID_STATE, "vault not found"))
        state = layout.decode_dca_vault(vault)
        ix = Instruction(
            self.program_id,
            layout.encode_execute_dca(swap_amount, received_amount),
            [
                AccountMeta(self.keeper, is_signer=True, is_writable=True),
                AccountMeta(Pubkey.from_string(address), is_signer=False, is_writable=True),
                AccountMeta(Pubkey.from_string(state.input_escrow), is_signer=False, is_writable=True),
                AccountMeta(Pubkey.from_string(state.output_escrow), is_signer=False, is_writable=True),
                AccountMeta(self._keeper_ata(state.input_token), is_signer=False, is_writable=True),
                AccountMeta(self._keeper_ata(state.output_token), is_signer=False, is_writable=True),
                AccountMeta(layout.TOKEN_PROGRAM_ID, is_signer=False, is_writable=False),
            ],
        )
        return self._settle(ix, on_signed)

    async def settle_dca(
        self, address: str, swap_amount: int, received_amount: int, on_signed: OnSigned | None = None
    ) -> SettlementOutcome:
        return await asyncio.to_thread(self._settle_dca_sync, address, swap_amount, received_amount, on_signed)

    def _settle_intent_sync(
        self,
        address: str,
        price: int,
        swap_amount: int,
        received_amount: int,
        on_signed: OnSigned | None = None,
    ) -> SettlementOutcome:
        vault = self._account_data(address)
        if vault is None:
            return SettlementOutcome(error=LedgerError(LedgerErrorKind.INVALID_STATE, "vault not found"))
        state = layout.decode_intent_vault(vault)
        user_output = layout.associated_token_address(
            Pubkey.from_string(state.authority), Pubkey.from_string(state.output_token)
        )
        ix = Instruction(
            self.program_id,
            layout.encode_execute_intent(price, swap_amount, received_amount),
            [
                AccountMeta(self.keeper, is_signer=True, is_writable=True),
                AccountMeta(Pubkey.from_string(address), is_signer=False, is_writable=True),
                AccountMeta(Pubkey.from_string(state.input_escrow), is_signer=False, is_writable=True),
                AccountMeta(self._keeper_ata(state.input_token), is_signer=False, is_writable=True),
                AccountMeta(self._keeper_ata(state.output_token), is_signer=False, is_writable=True),
                AccountMeta(user_output, is_signer=False, is_writable=True),
                AccountMeta(layout.TOKEN_PROGRAM_ID, is_signer=False, is_writable=False),
            ],
        )
        return self._settle(ix, on_signed)

    async def settle_intent(
        self,
        address: str,
        price: int,
        swap_amount: int,
        received_amount: int,
        on_signed: OnSigned | None = None,
    ) -> SettlementOutcome:
        return await asyncio.to_thread(
            self._settle_intent_sync, address, price, swap_amount, received_amount, on_signed
        )

    def _ensure_token_account_sync(self, mint: str) -> None:
        if mint in self._known_token_accounts:
            return
        mint_key = Pubkey.from_string(mint)
        ata = layout.associated_token_address(self.keeper, mint_key)
        if self.client.get_account_info(ata).value is None:
            logger.info("Creating keeper token account for {}...", mint[:8])
            ix = Instruction(
                layout.ASSOCIATED_TOKEN_PROGRAM_ID,
                bytes([1]),  # CreateIdempotent
                [
                    AccountMeta(self.keeper, is_signer=True, is_writable=True),
                    AccountMeta(ata, is_signer=False, is_writable=True),
                    AccountMeta(self.keeper, is_signer=False, is_writable=False),
                    AccountMeta(mint_key, is_signer=False, is_writable=False),
                    AccountMeta(layout.SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
                    AccountMeta(layout.TOKEN_PROGRAM_ID, is_signer=False, is_writable=False),
                ],
            )
            self._send([ix])
        self._known_token_accounts.add(mint)

    async def ensure_token_account(self, mint: str) -> None:
        await asyncio.to_thread(self._ensure_token_account_sync, mint)

    # --- swap reconciliation ---------------------------------------------

    def _lookup_swap_sync(self, signature: str, input_token: str, output_token: str) -> SwapLookup:
        status = self._lookup_signature_sync(signature)
        if status != LookupStatus.LANDED:
            return SwapLookup(status)
        tr = self.client.get_transaction(
            Signature.from_string(signature), encoding="json", max_supported_transaction_version=0
        )
        res = json.loads(tr.to_json()).get("result") or {}
        meta = res.get("meta") or {}
        deltas = token_deltas(meta, str(self.keeper))
        spent = -deltas.get(input_token, 0)
        received = deltas.get(output_token, 0)
        if received <= 0:
            # Landed, but the realized amounts cannot be recovered from balances.
            logger.warning("Swap {} landed without a visible output delta", signature[:8])
            return SwapLookup(LookupStatus.LANDED)
        # Native SOL inputs show no token delta; callers fall back to the planned amount.
        return SwapLookup(
            LookupStatus.LANDED,
            SwapFill(signature=signature, input_amount=max(spent, 0), output_amount=received),
        )

    async def lookup_swap(self, signature: str, input_token: str, output_token: str) -> SwapLookup:
        return await asyncio.to_thread(self._lookup_swap_sync, signature, input_token, output_token)

    def _lookup_signature_sync(self, signature: str) -> LookupStatus:
        statuses = self.client.get_signature_statuses(
            [Signature.from_string(signature)], search_transaction_history=True
        ).value
        status = statuses[0] if statuses else None
        if status is None:
            return LookupStatus.NOT_FOUND
        return LookupStatus.FAILED if status.err is not None else LookupStatus.LANDED

    async def lookup_signature(self, signature: str) -> LookupStatus:
        return await asyncio.to_thread(self._lookup_signature_sync, signature)
