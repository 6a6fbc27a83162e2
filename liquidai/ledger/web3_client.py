"""web3.py client for the deployed liquidity vault contract.

Two signing identities: the agent key proposes, the owner key executes and
manages authority. Each write is built, signed locally, sent raw, and waited
on until its receipt arrives (bounded by `confirmation_timeout_s`). There is
no retry here; the caller decides.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional, Sequence, Tuple

import requests
from web3 import Web3
from web3.exceptions import ContractLogicError, MismatchedABI, TimeExhausted, Web3Exception
from web3.logs import DISCARD

from liquidai.config import LedgerConfig
from liquidai.ledger.client import (
    ConfirmationTimeout,
    LedgerClient,
    RpcUnavailable,
    TransactionRejected,
    TransactionReverted,
)
from liquidai.ledger.schemas import LedgerEvent, LedgerEventType, RebalanceProposal, TxReceipt


def _addr_array(name: str) -> Dict[str, Any]:
    return {"name": name, "type": "address[]", "internalType": "address[]"}


def _uint_array(name: str) -> Dict[str, Any]:
    return {"name": name, "type": "uint256[]", "internalType": "uint256[]"}


VAULT_ABI: List[Dict[str, Any]] = [
    {
        "type": "function",
        "name": "proposeRebalance",
        "stateMutability": "nonpayable",
        "inputs": [_addr_array("pools"), _uint_array("ratios"), {"name": "reason", "type": "string"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "type": "function",
        "name": "executeRebalance",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "proposalId", "type": "uint256"}],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "updateAgentAuthority",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "newAuthority", "type": "address"}],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "getProposalCount",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "type": "function",
        "name": "getRebalanceProposal",
        "stateMutability": "view",
        "inputs": [{"name": "proposalId", "type": "uint256"}],
        "outputs": [
            {
                "name": "",
                "type": "tuple",
                "components": [
                    _addr_array("pools"),
                    _uint_array("ratios"),
                    {"name": "timestamp", "type": "uint256"},
                    {"name": "executed", "type": "bool"},
                    {"name": "reason", "type": "string"},
                ],
            }
        ],
    },
    {
        "type": "function",
        "name": "getPoolAllocation",
        "stateMutability": "view",
        "inputs": [{"name": "pool", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "type": "event",
        "name": "RebalanceProposed",
        "anonymous": False,
        "inputs": [
            {"name": "proposalId", "type": "uint256", "indexed": True},
            {**_addr_array("pools"), "indexed": False},
            {**_uint_array("ratios"), "indexed": False},
            {"name": "reason", "type": "string", "indexed": False},
        ],
    },
    {
        "type": "event",
        "name": "RebalanceExecuted",
        "anonymous": False,
        "inputs": [
            {"name": "proposalId", "type": "uint256", "indexed": True},
            {**_addr_array("pools"), "indexed": False},
            {**_uint_array("ratios"), "indexed": False},
        ],
    },
    {
        "type": "event",
        "name": "AgentAuthorityUpdated",
        "anonymous": False,
        "inputs": [
            {"name": "oldAuthority", "type": "address", "indexed": True},
            {"name": "newAuthority", "type": "address", "indexed": True},
        ],
    },
]

_EVENT_NAMES = {
    "RebalanceProposed": LedgerEventType.rebalance_proposed,
    "RebalanceExecuted": LedgerEventType.rebalance_executed,
    "AgentAuthorityUpdated": LedgerEventType.agent_authority_updated,
}


# Chain cursors pack (block, log index) into one ordered integer.
LOG_INDEX_SPAN = 1_000_000


def chain_cursor(block_number: int, log_index: int = 0) -> int:
    return int(block_number) * LOG_INDEX_SPAN + int(log_index)


def _to_event(decoded: Any) -> LedgerEvent:
    args = dict(decoded["args"])
    tx_hash = decoded.get("transactionHash")
    block = int(decoded.get("blockNumber") or 0)
    return LedgerEvent(
        event_type=_EVENT_NAMES[decoded["event"]],
        cursor=chain_cursor(block, decoded.get("logIndex") or 0),
        proposal_id=int(args["proposalId"]) if "proposalId" in args else None,
        pools=[str(p) for p in args.get("pools", [])],
        ratios=[int(r) for r in args.get("ratios", [])],
        reason=args.get("reason"),
        old_authority=args.get("oldAuthority"),
        new_authority=args.get("newAuthority"),
        tx_hash=Web3.to_hex(tx_hash) if tx_hash is not None else None,
        block_number=block,
    )


class Web3LedgerClient(LedgerClient):
    mode = "web3"

    def __init__(
        self,
        *,
        rpc_url: str,
        contract_address: str,
        agent_private_key: str,
        owner_private_key: Optional[str] = None,
        confirmation_timeout_s: float = 120.0,
        poll_latency_s: float = 1.0,
        start_block: Optional[int] = None,
        log_chunk_blocks: int = 2000,
        web3: Optional[Web3] = None,
    ):
        if not Web3.is_address(contract_address):
            raise ValueError(f"Invalid contract address: {contract_address}")
        self.w3 = web3 if web3 is not None else Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": 30}))
        self.contract = self.w3.eth.contract(address=Web3.to_checksum_address(contract_address), abi=VAULT_ABI)
        self._agent = self.w3.eth.account.from_key(agent_private_key)
        self._owner = self.w3.eth.account.from_key(owner_private_key) if owner_private_key else None
        self.confirmation_timeout_s = float(confirmation_timeout_s)
        self.poll_latency_s = float(poll_latency_s)
        self.start_block = int(start_block) if start_block is not None else None
        self.log_chunk_blocks = max(1, int(log_chunk_blocks))

    @classmethod
    def from_config(cls, cfg: LedgerConfig) -> "Web3LedgerClient":
        return cls(
            rpc_url=cfg.rpc_url,
            contract_address=cfg.contract_address or "",
            agent_private_key=cfg.agent_private_key or "",
            owner_private_key=cfg.owner_private_key,
            confirmation_timeout_s=cfg.confirmation_timeout_s,
            start_block=cfg.start_block,
            log_chunk_blocks=cfg.log_chunk_blocks,
        )

    @property
    def agent_identity(self) -> str:
        return self._agent.address

    @property
    def owner_identity(self) -> Optional[str]:
        return self._owner.address if self._owner is not None else None

    # -----------------
    # Writes
    # -----------------

    def _send(self, account: Any, method: str, fn: Any) -> TxReceipt:
        if account is None:
            raise TransactionRejected(f"{method}: no signing key configured")
        try:
            tx = fn.build_transaction(
                {
                    "from": account.address,
                    "nonce": self.w3.eth.get_transaction_count(account.address, "pending"),
                    "chainId": self.w3.eth.chain_id,
                }
            )
            signed = account.sign_transaction(tx)
            raw = getattr(signed, "raw_transaction", None) or signed.rawTransaction
            tx_hash = self.w3.eth.send_raw_transaction(raw)
        except ContractLogicError as e:
            raise TransactionRejected(f"{method} rejected: {e}", cause=e) from e
        except (requests.exceptions.RequestException, Web3Exception) as e:
            raise RpcUnavailable(f"{method} submission failed: {e}", cause=e) from e

        hex_hash = Web3.to_hex(tx_hash)
        try:
            receipt = self.w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self.confirmation_timeout_s, poll_latency=self.poll_latency_s
            )
        except TimeExhausted as e:
            raise ConfirmationTimeout(
                f"{method} not confirmed within {self.confirmation_timeout_s}s", cause=e, tx_hash=hex_hash
            ) from e
        except (requests.exceptions.RequestException, Web3Exception) as e:
            raise RpcUnavailable(f"{method} confirmation failed: {e}", cause=e, tx_hash=hex_hash) from e

        if int(receipt.get("status", 0)) != 1:
            raise TransactionReverted(f"{method} reverted in block {receipt.get('blockNumber')}", tx_hash=hex_hash)

        events: List[LedgerEvent] = []
        for name in _EVENT_NAMES:
            for decoded in getattr(self.contract.events, name)().process_receipt(receipt, errors=DISCARD):
                events.append(_to_event(decoded))
        return TxReceipt(
            tx_hash=hex_hash,
            block_number=int(receipt.get("blockNumber") or 0),
            gas_used=int(receipt.get("gasUsed") or 0),
            status=1,
            events=events,
        )

    async def propose(self, pools: Sequence[str], ratios: Sequence[int], reason: str) -> TxReceipt:
        fn = self.contract.functions.proposeRebalance(
            [Web3.to_checksum_address(p) for p in pools], [int(r) for r in ratios], reason
        )
        return await asyncio.to_thread(self._send, self._agent, "proposeRebalance", fn)

    async def execute(self, proposal_id: int) -> TxReceipt:
        fn = self.contract.functions.executeRebalance(int(proposal_id))
        return await asyncio.to_thread(self._send, self._owner, "executeRebalance", fn)

    async def update_agent_authority(self, new_identity: str) -> TxReceipt:
        fn = self.contract.functions.updateAgentAuthority(Web3.to_checksum_address(new_identity))
        return await asyncio.to_thread(self._send, self._owner, "updateAgentAuthority", fn)

    # -----------------
    # Reads
    # -----------------

    def _call(self, method: str, fn: Any) -> Any:
        try:
            return fn.call()
        except ContractLogicError as e:
            raise TransactionRejected(f"{method} rejected: {e}", cause=e) from e
        except (requests.exceptions.RequestException, Web3Exception) as e:
            raise RpcUnavailable(f"{method} failed: {e}", cause=e) from e

    def _read_proposal(self, proposal_id: int) -> RebalanceProposal:
        pools, ratios, timestamp, executed, reason = self._call(
            "getRebalanceProposal", self.contract.functions.getRebalanceProposal(int(proposal_id))
        )
        return RebalanceProposal(
            proposal_id=int(proposal_id),
            pools=[str(p) for p in pools],
            ratios=[int(r) for r in ratios],
            reason=reason,
            created_at=int(timestamp) * 1000,
            executed=bool(executed),
        )

    async def get_proposal(self, proposal_id: int) -> RebalanceProposal:
        return await asyncio.to_thread(self._read_proposal, proposal_id)

    async def get_proposal_count(self) -> int:
        count = await asyncio.to_thread(self._call, "getProposalCount", self.contract.functions.getProposalCount())
        return int(count)

    async def get_pool_allocation(self, pool: str) -> int:
        fn = self.contract.functions.getPoolAllocation(Web3.to_checksum_address(pool))
        return int(await asyncio.to_thread(self._call, "getPoolAllocation", fn))

    # -----------------
    # Events
    # -----------------

    def _head_block(self) -> int:
        try:
            return int(self.w3.eth.block_number)
        except (requests.exceptions.RequestException, Web3Exception) as e:
            raise RpcUnavailable(f"block_number failed: {e}", cause=e) from e

    def _get_logs(self, from_block: int, to_block: int) -> List[Any]:
        try:
            return list(
                self.w3.eth.get_logs(
                    {"address": self.contract.address, "fromBlock": int(from_block), "toBlock": int(to_block)}
                )
            )
        except (requests.exceptions.RequestException, Web3Exception) as e:
            raise RpcUnavailable(f"get_logs {from_block}-{to_block} failed: {e}", cause=e) from e

    def _decode_log(self, log: Any) -> Optional[Any]:
        for name in _EVENT_NAMES:
            try:
                return getattr(self.contract.events, name)().process_log(log)
            except MismatchedABI:
                continue
        return None

    def _logs_since(self, cursor: int) -> Tuple[List[LedgerEvent], int]:
        """Scan `[cursor block, head]` in chunks of `log_chunk_blocks`.

        Events before `cursor` inside its block are skipped. Nothing is
        returned unless every chunk succeeds, so a failed scan is retried
        from the same cursor.
        """
        from_block = int(cursor) // LOG_INDEX_SPAN
        latest = self._head_block()
        if from_block > latest:
            return [], cursor

        events: List[LedgerEvent] = []
        start = from_block
        while start <= latest:
            end = min(latest, start + self.log_chunk_blocks - 1)
            for log in self._get_logs(start, end):
                decoded = self._decode_log(log)
                if decoded is None:
                    continue
                event = _to_event(decoded)
                if event.cursor >= cursor:
                    events.append(event)
            start = end + 1
        events.sort(key=lambda e: e.cursor)
        return events, chain_cursor(latest + 1)

    def _initial_cursor(self) -> int:
        if self.start_block is not None:
            return chain_cursor(self.start_block)
        # Past proposals are read back through `list_proposals`.
        return chain_cursor(self._head_block() + 1)

    async def initial_cursor(self) -> int:
        return await asyncio.to_thread(self._initial_cursor)

    async def events_since(self, cursor: int) -> Tuple[List[LedgerEvent], int]:
        return await asyncio.to_thread(self._logs_since, cursor)


__all__ = ["LOG_INDEX_SPAN", "VAULT_ABI", "Web3LedgerClient", "chain_cursor"]
