"""
Signing Collaborator
====================
Turns READY_FOR_SIGNING instruction dicts into submitted transactions.

Key custody and the signing UI live outside this package: the pipeline only
sees the SigningCollaborator protocol.

    signer: SigningCollaborator = SimulatedSigner()
    signature = await signer.sign_and_submit(instruction, extra_signers=[mint_keypair])

SimulatedSigner is the explicit offline implementation. It never touches a
network; it keeps an in-memory ledger of what it "submitted" and answers
signature status lookups from it, so it doubles as the status source for
the confirmation poller in simulated runs. Outcomes can be scripted per
instruction to rehearse expiry, rejection and slow confirmation.
"""

import asyncio
import time
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, Iterable, List, Optional, Protocol, runtime_checkable

from solders.keypair import Keypair
from solders.signature import Signature

from mintforge.shared.infrastructure.rpc_client import SignatureStatus
from mintforge.shared.system.errors import OperationRejected, TransientError
from mintforge.shared.system.logging import Logger

READY_FOR_SIGNING = "READY_FOR_SIGNING"


@runtime_checkable
class SigningCollaborator(Protocol):
    """
    Interface every signer implements.

    sign_and_submit raises TransientError for failures worth resubmitting
    (expired blockhash, congestion) and OperationRejected for refusals.
    """

    @property
    def public_identity(self) -> str:
        """Base58 address of the paying / authority wallet."""
        ...

    @property
    def is_connected(self) -> bool:
        ...

    async def sign_and_submit(self, instruction: Dict[str, Any], extra_signers: Optional[List[Keypair]] = None) -> str:
        """
        Sign and submit one instruction, returning its signature.

        extra_signers carries co-signing keypairs (the new mint on create);
        they are handed over as objects, never serialized into the instruction.
        """
        ...


@runtime_checkable
class BalanceSource(Protocol):
    async def get_balance(self, address: str) -> int:
        """Lamport balance of `address`."""
        ...


# ═══════════════════════════════════════════════════════════════════════════════
# SIMULATED SIGNER
# ═══════════════════════════════════════════════════════════════════════════════

# Scripted outcomes for a submission
CONFIRM = "confirm"        # confirmed after `confirm_after_polls` lookups
EXPIRE = "expire"          # status reports BlockhashNotFound
DROP = "drop"              # never seen by the network
REJECT = "reject"          # permanent on-chain error
SUBMIT_ERROR = "submit_error"  # sign_and_submit itself raises a transient error


@dataclass
class SimulatedSubmission:
    signature: str
    instruction: str
    outcome: str
    submitted_at: float = field(default_factory=time.time)
    lookups: int = 0
    slot: int = 0
    extra_signers: List[str] = field(default_factory=list)


class SimulatedSigner:
    """
    Offline signer with a scripted in-memory ledger.

    Usage:
        signer = SimulatedSigner(outcomes={"attach_metadata": ["expire", "confirm"]})
        sig = await signer.sign_and_submit(ix)
        status = await signer.get_signature_status(sig)

    Submissions without a scripted outcome confirm.
    """

    def __init__(
        self,
        identity: Optional[Keypair] = None,
        outcomes: Optional[Dict[str, Iterable[str]]] = None,
        confirm_after_polls: int = 1,
        reject_reason: str = "custom program error: 0x1",
        latency_s: float = 0.0,
        start_slot: int = 250_000_000,
        balance_lamports: int = 2_000_000_000,
        connected: bool = True,
    ):
        self._identity = identity or Keypair()
        self._outcomes: Dict[str, Deque[str]] = defaultdict(deque)
        for name, script in (outcomes or {}).items():
            self._outcomes[name].extend(script)
        self.confirm_after_polls = max(1, confirm_after_polls)
        self.reject_reason = reject_reason
        self._latency_s = latency_s
        self._slot = start_slot
        self.balance_lamports = balance_lamports
        self.connected = connected
        self.ledger: Dict[str, SimulatedSubmission] = {}
        self.submissions: List[SimulatedSubmission] = []

        Logger.info(f"[SIGNER] Simulated signer ready ({self.public_identity[:8]}...)")

    @property
    def public_identity(self) -> str:
        return str(self._identity.pubkey())

    @property
    def is_connected(self) -> bool:
        return self.connected

    def script(self, instruction: str, *outcomes: str) -> None:
        """Queue outcomes for the next submissions of `instruction`."""
        self._outcomes[instruction].extend(outcomes)

    def submitted(self, instruction: Optional[str] = None) -> List[SimulatedSubmission]:
        if instruction is None:
            return list(self.submissions)
        return [s for s in self.submissions if s.instruction == instruction]

    async def sign_and_submit(self, instruction: Dict[str, Any], extra_signers: Optional[List[Keypair]] = None) -> str:
        status = instruction.get("status", "")
        if status != READY_FOR_SIGNING:
            raise OperationRejected(f"Instruction not ready: {status or 'missing status'}", retry_safe=True)
        if not self.connected:
            raise OperationRejected("Signer disconnected", retry_safe=True)

        available = {self.public_identity} | {str(kp.pubkey()) for kp in (extra_signers or [])}
        missing = [s for s in instruction.get("signers", []) if s not in available]
        if missing:
            raise OperationRejected(f"Missing signature for {missing[0][:8]}...", retry_safe=True)

        if self._latency_s:
            await asyncio.sleep(self._latency_s)

        name = instruction.get("instruction", "unknown")
        queue = self._outcomes.get(name)
        outcome = queue.popleft() if queue else CONFIRM

        if outcome == SUBMIT_ERROR:
            self.submissions.append(SimulatedSubmission(signature="", instruction=name, outcome=outcome))
            raise TransientError("simulated submit failure: network congestion")

        signature = str(Signature.new_unique())
        self._slot += 1
        record = SimulatedSubmission(signature=signature, instruction=name, outcome=outcome, slot=self._slot)
        record.extra_signers = sorted(available - {self.public_identity})
        self.ledger[signature] = record
        self.submissions.append(record)

        Logger.debug(f"[SIGNER] Simulated {name} -> {signature[:16]}... ({outcome})")
        return signature

    async def get_signature_status(self, signature: str) -> SignatureStatus:
        """Status lookup against the simulated ledger."""
        record = self.ledger.get(signature)
        if record is None:
            return SignatureStatus(found=False)

        record.lookups += 1
        if record.outcome == CONFIRM:
            if record.lookups >= self.confirm_after_polls:
                return SignatureStatus(found=True, confirmation_status="confirmed", slot=record.slot)
            return SignatureStatus(found=True, confirmation_status="processed", slot=record.slot)
        if record.outcome == EXPIRE:
            return SignatureStatus(found=True, err="BlockhashNotFound", slot=record.slot)
        if record.outcome == REJECT:
            return SignatureStatus(found=True, err={"InstructionError": [0, self.reject_reason]}, slot=record.slot)
        return SignatureStatus(found=False)

    async def get_balance(self, address: str) -> int:
        """Lamport balance of the simulated wallet (zero for any other address)."""
        return self.balance_lamports if address == self.public_identity else 0

    def get_stats(self) -> Dict[str, Any]:
        return {
            "identity": self.public_identity,
            "submissions": len(self.submissions),
            "confirmed": sum(1 for s in self.submissions if s.outcome == CONFIRM),
        }
