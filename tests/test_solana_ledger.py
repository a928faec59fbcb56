import asyncio
import json
from types import SimpleNamespace

from solders.hash import Hash
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import Transaction
from test_layout import KEYS, dca_account_bytes

from kryptos_keeper.chains.ledger import LookupStatus
from kryptos_keeper.chains.solana import SolanaLedger, token_deltas
from kryptos_keeper.config import AppSettings
from kryptos_keeper.errors import LedgerErrorKind

SIG = str(Signature.default())


class FakeClient:
    def __init__(self, send_error=None, status=None, meta=None, accounts=None):
        self.send_error = send_error
        self.status = status
        self.meta = meta or {}
        self.accounts = accounts or {}
        self.sent = []

    def get_slot(self):
        return SimpleNamespace(value=123)

    def get_balance(self, pubkey):
        return SimpleNamespace(value=5_000_000)

    def get_program_accounts(self, program_id, encoding=None, filters=None):
        return SimpleNamespace(
            value=[
                SimpleNamespace(pubkey=Pubkey.from_string(a), account=SimpleNamespace(data=d))
                for a, d in self.accounts.items()
            ]
        )

    def get_account_info(self, pubkey, encoding=None):
        data = self.accounts.get(str(pubkey))
        return SimpleNamespace(value=SimpleNamespace(data=data) if data is not None else None)

    def get_latest_blockhash(self):
        return SimpleNamespace(value=SimpleNamespace(blockhash=Hash.default()))

    def send_raw_transaction(self, raw, opts=None):
        if self.send_error:
            raise self.send_error
        self.sent.append(raw)
        return SimpleNamespace(value=SIG)

    def get_signature_statuses(self, sigs, search_transaction_history=False):
        return SimpleNamespace(value=[self.status])

    def get_transaction(self, sig, encoding=None, max_supported_transaction_version=0):
        payload = json.dumps({"result": {"meta": self.meta}})
        return SimpleNamespace(to_json=lambda: payload)


def make_ledger(client) -> tuple[SolanaLedger, Keypair]:
    kp = Keypair()
    return SolanaLedger(settings=AppSettings(), client=client, keypair=kp, program_id=Pubkey.new_unique()), kp


def balance(idx, owner, mint, amount):
    return {"accountIndex": idx, "owner": owner, "mint": mint, "uiTokenAmount": {"amount": str(amount)}}


def test_token_deltas_matches_by_account_index():
    meta = {
        "preTokenBalances": [balance(1, "me", "IN", 500), balance(3, "other", "OUT", 7)],
        "postTokenBalances": [balance(1, "me", "IN", 400), balance(2, "me", "OUT", 250), balance(3, "other", "OUT", 9)],
    }
    assert token_deltas(meta, "me") == {"IN": -100, "OUT": 250}


def test_health_balance_and_fetch():
    vault = str(Pubkey.new_unique())
    ledger, _ = make_ledger(FakeClient(accounts={vault: dca_account_bytes(), str(KEYS[5]): b"\x00" * 16}))
    assert asyncio.run(ledger.health()) == 123
    assert asyncio.run(ledger.keeper_balance()) == 5_000_000
    vaults = asyncio.run(ledger.fetch_all_dca_vaults())
    # the undecodable account is skipped
    assert [a for a, _ in vaults] == [vault]
    assert asyncio.run(ledger.fetch_dca_vault(vault)).total_amount == 1_000_000
    assert asyncio.run(ledger.fetch_dca_vault(str(Pubkey.new_unique()))) is None


def test_settle_dca_sends_transaction():
    vault = str(Pubkey.new_unique())
    client = FakeClient(accounts={vault: dca_account_bytes()})
    ledger, _ = make_ledger(client)
    result = asyncio.run(ledger.settle_dca(vault, 100, 250))
    assert result.ok
    assert result.signature == SIG
    assert len(client.sent) == 1


def test_settle_dca_maps_program_error():
    vault = str(Pubkey.new_unique())
    client = FakeClient(
        accounts={vault: dca_account_bytes()},
        send_error=RuntimeError("Transaction simulation failed: custom program error: 0x1776"),
    )
    ledger, _ = make_ledger(client)
    result = asyncio.run(ledger.settle_dca(vault, 100, 250))
    assert not result.ok
    assert result.error.kind == LedgerErrorKind.TIMING_NOT_YET_ALLOWED


def test_settle_reports_signature_before_sending():
    vault = str(Pubkey.new_unique())
    client = FakeClient(accounts={vault: dca_account_bytes()})
    ledger, _ = make_ledger(client)
    seen = []
    asyncio.run(ledger.settle_dca(vault, 100, 250, on_signed=seen.append))
    assert seen == [str(Transaction.from_bytes(client.sent[0]).signatures[0])]

    client.send_error = RuntimeError("timed out waiting for confirmation")
    seen.clear()
    result = asyncio.run(ledger.settle_dca(vault, 100, 250, on_signed=seen.append))
    assert result.error.kind == LedgerErrorKind.RPC_ERROR
    assert len(seen) == 1
    Signature.from_string(seen[0])


def test_settle_missing_vault_is_invalid_state():
    ledger, _ = make_ledger(FakeClient())
    result = asyncio.run(ledger.settle_dca(str(Pubkey.new_unique()), 1, 1))
    assert result.error.kind == LedgerErrorKind.INVALID_STATE


def test_lookup_swap_states():
    ledger, kp = make_ledger(FakeClient(status=None))
    assert asyncio.run(ledger.lookup_swap(SIG, "IN", "OUT")).status == LookupStatus.NOT_FOUND

    ledger.client = FakeClient(status=SimpleNamespace(err="InstructionError"))
    assert asyncio.run(ledger.lookup_swap(SIG, "IN", "OUT")).status == LookupStatus.FAILED

    me = str(kp.pubkey())
    meta = {
        "preTokenBalances": [balance(1, me, "IN", 500)],
        "postTokenBalances": [balance(1, me, "IN", 400), balance(2, me, "OUT", 250)],
    }
    ledger.client = FakeClient(status=SimpleNamespace(err=None), meta=meta)
    found = asyncio.run(ledger.lookup_swap(SIG, "IN", "OUT"))
    assert found.status == LookupStatus.LANDED
    assert (found.fill.input_amount, found.fill.output_amount) == (100, 250)

    ledger.client = FakeClient(status=SimpleNamespace(err=None), meta={})
    unknown = asyncio.run(ledger.lookup_swap(SIG, "IN", "OUT"))
    assert unknown.status == LookupStatus.LANDED
    assert unknown.fill is None


def test_ensure_token_account_creates_once():
    client = FakeClient()
    ledger, _ = make_ledger(client)
    mint = str(Pubkey.new_unique())
    asyncio.run(ledger.ensure_token_account(mint))
    asyncio.run(ledger.ensure_token_account(mint))
    assert len(client.sent) == 1


def test_lookup_signature_states():
    ledger, _ = make_ledger(FakeClient(status=None))
    assert asyncio.run(ledger.lookup_signature(SIG)) == LookupStatus.NOT_FOUND
    ledger.client = FakeClient(status=SimpleNamespace(err="InstructionError"))
    assert asyncio.run(ledger.lookup_signature(SIG)) == LookupStatus.FAILED
    ledger.client = FakeClient(status=SimpleNamespace(err=None))
    assert asyncio.run(ledger.lookup_signature(SIG)) == LookupStatus.LANDED
