"""Collective identity, challenge/response authentication and reputation.

Identities are Ed25519 key pairs. The public identity id is the first 16 hex
characters of ``sha256(public_key_hex)``, so a peer cannot claim an id that
does not belong to the key it presents.
"""

from __future__ import annotations

import hashlib
import logging
import secrets
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from pathlib import Path
from typing import Any

from nacl.encoding import Base64Encoder, HexEncoder
from nacl.exceptions import BadSignatureError, CryptoError
from nacl.signing import SigningKey, VerifyKey

from amphibian.clock import SYSTEM_CLOCK, Clock
from amphibian.errors import AuthFailedError, IntegrityError
from amphibian.storage.atomic import read_json_async, write_json_atomic

logger = logging.getLogger(__name__)


class TrustLevel(IntEnum):
    """Trust levels for collective members."""

    ANONYMOUS = 0  # no identity, view only
    NEW = 1
    TRUSTED = 2
    VERIFIED = 3
    GUARDIAN = 4  # moderation capabilities


class Permission(str, Enum):
    SUBMIT_TASK = "submit_task"
    CLAIM_TASK = "claim_task"
    VIEW_RESULTS = "view_results"
    CONTRIBUTE_TRAINING = "contribute_training"
    ACCESS_PREMIUM = "access_premium"
    MODERATE = "moderate"
    ADMIN = "admin"


class Badge(str, Enum):
    FIRST_CONTRIBUTION = "first_contribution"
    TEN_CONTRIBUTIONS = "10_contributions"
    HUNDRED_CONTRIBUTIONS = "100_contributions"
    FIRST_TRAINING = "first_training"
    PERFECT_ACCURACY = "perfect_accuracy"
    EARLY_ADOPTER = "early_adopter"
    HELPFUL_PEER = "helpful_peer"
    FAST_RESPONDER = "fast_responder"
    CONSISTENT_CONTRIBUTOR = "consistent_contributor"
    TRUSTED_MEMBER = "trusted_member"


class ReputationPoints(IntEnum):
    TASK_COMPLETED = 10
    TASK_VERIFIED = 5
    TRAINING_CONTRIBUTION = 15
    HELPFUL_ANSWER = 3
    PEER_ENDORSEMENT = 5
    BUG_REPORT = 8
    FAST_RESPONSE = 2


_BASE_PERMISSIONS = [Permission.VIEW_RESULTS, Permission.SUBMIT_TASK, Permission.CLAIM_TASK]

LEVEL_PERMISSIONS: dict[TrustLevel, frozenset[Permission]] = {
    TrustLevel.ANONYMOUS: frozenset({Permission.VIEW_RESULTS}),
    TrustLevel.NEW: frozenset(_BASE_PERMISSIONS),
    TrustLevel.TRUSTED: frozenset([*_BASE_PERMISSIONS, Permission.CONTRIBUTE_TRAINING]),
    TrustLevel.VERIFIED: frozenset(
        [*_BASE_PERMISSIONS, Permission.CONTRIBUTE_TRAINING, Permission.ACCESS_PREMIUM]
    ),
    TrustLevel.GUARDIAN: frozenset(
        [
            *_BASE_PERMISSIONS,
            Permission.CONTRIBUTE_TRAINING,
            Permission.ACCESS_PREMIUM,
            Permission.MODERATE,
        ]
    ),
}

CONTRIBUTION_BADGES: list[tuple[int, Badge]] = [
    (1, Badge.FIRST_CONTRIBUTION),
    (10, Badge.TEN_CONTRIBUTIONS),
    (100, Badge.HUNDRED_CONTRIBUTIONS),
]

# (level, min reputation, min contributions), highest first
TRUST_THRESHOLDS: list[tuple[TrustLevel, int, int]] = [
    (TrustLevel.GUARDIAN, 10_000, 500),
    (TrustLevel.VERIFIED, 1_000, 50),
    (TrustLevel.TRUSTED, 100, 10),
]

_ADJECTIVES = ["Swift", "Brave", "Wise", "Kind", "Bright", "Noble", "Bold", "Calm"]
_ANIMALS = ["Frog", "Salamander", "Newt", "Axolotl", "Toad", "Caecilian", "Gecko", "Triton"]


def derive_identity_id(public_key_hex: str) -> str:
    """First 16 hex chars of the SHA-256 of the hex-encoded public key."""
    return hashlib.sha256(public_key_hex.encode("ascii")).hexdigest()[:16]


def auth_message(challenge: str, timestamp: int, identity_id: str) -> bytes:
    return f"{challenge}:{timestamp}:{identity_id}".encode()


def verify_signature(public_key_hex: str, message: bytes, signature_b64: str) -> bool:
    """Check an Ed25519 signature; malformed keys or signatures yield False."""
    try:
        verify_key = VerifyKey(public_key_hex.encode("ascii"), encoder=HexEncoder)
        verify_key.verify(message, Base64Encoder.decode(signature_b64.encode("ascii")))
    except (BadSignatureError, CryptoError, ValueError, TypeError, UnicodeEncodeError):
        return False
    return True


def _display_name(identity_id: str) -> str:
    value = int(identity_id[:8], 16)
    return f"{_ADJECTIVES[value % len(_ADJECTIVES)]}{_ANIMALS[(value >> 8) % len(_ANIMALS)]}{value % 1000}"


@dataclass
class ReputationEvent:
    type: str
    points: int
    reason: str
    timestamp: int = 0
    related_id: str | None = None


@dataclass
class CollectiveIdentity:
    """Member identity; ``private_key`` is only present for the local identity."""

    id: str
    public_key: str
    private_key: str | None = None
    display_name: str = ""
    trust_level: TrustLevel = TrustLevel.NEW
    reputation: int = 0
    contributions: dict[str, int] = field(default_factory=dict)
    badges: list[str] = field(default_factory=list)
    created_at: int = 0
    last_active: int = 0
    verified: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.display_name:
            self.display_name = _display_name(self.id)

    @classmethod
    def generate(cls, now: int, display_name: str = "") -> CollectiveIdentity:
        signing_key = SigningKey.generate()
        public_key = signing_key.verify_key.encode(encoder=HexEncoder).decode("ascii")
        return cls(
            id=derive_identity_id(public_key),
            public_key=public_key,
            private_key=signing_key.encode(encoder=HexEncoder).decode("ascii"),
            display_name=display_name,
            created_at=now,
            last_active=now,
        )

    def sign(self, message: bytes) -> str:
        """Sign ``message`` and return the base64 signature.

        Raises:
            AuthFailedError: If this identity has no private key
        """
        if not self.private_key:
            raise AuthFailedError("Cannot sign without a private key", {"id": self.id})
        signing_key = SigningKey(self.private_key.encode("ascii"), encoder=HexEncoder)
        return signing_key.sign(message, encoder=Base64Encoder).signature.decode("ascii")

    def create_auth_response(self, challenge: str, now: int) -> dict[str, Any]:
        """Answer a coordinator challenge."""
        return {
            "id": self.id,
            "publicKey": self.public_key,
            "timestamp": now,
            "signature": self.sign(auth_message(challenge, now, self.id)),
        }

    def has_permission(self, permission: Permission) -> bool:
        return permission in LEVEL_PERMISSIONS.get(self.trust_level, frozenset())

    @property
    def total_contributions(self) -> int:
        return sum(self.contributions.values())

    def to_public_profile(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "publicKey": self.public_key,
            "displayName": self.display_name,
            "trustLevel": int(self.trust_level),
            "reputation": self.reputation,
            "contributions": dict(self.contributions),
            "badges": list(self.badges),
            "verified": self.verified,
            "memberSince": self.created_at,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "publicKey": self.public_key,
            "privateKey": self.private_key,
            "displayName": self.display_name,
            "trustLevel": int(self.trust_level),
            "reputation": self.reputation,
            "contributions": dict(self.contributions),
            "badges": list(self.badges),
            "createdAt": self.created_at,
            "lastActive": self.last_active,
            "verified": self.verified,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CollectiveIdentity:
        """Restore a stored identity.

        Raises:
            IntegrityError: If fields are missing or the id does not match the key
        """
        try:
            identity = cls(
                id=str(data["id"]),
                public_key=str(data["publicKey"]),
                private_key=data.get("privateKey"),
                display_name=data.get("displayName") or "",
                trust_level=TrustLevel(int(data.get("trustLevel", TrustLevel.NEW))),
                reputation=int(data.get("reputation", 0)),
                contributions={str(k): int(v) for k, v in (data.get("contributions") or {}).items()},
                badges=list(data.get("badges") or []),
                created_at=int(data.get("createdAt", 0)),
                last_active=int(data.get("lastActive", 0)),
                verified=bool(data.get("verified", False)),
                metadata=dict(data.get("metadata") or {}),
            )
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise IntegrityError(f"Malformed identity: {e}") from e

        if identity.id != derive_identity_id(identity.public_key):
            raise IntegrityError("Identity id does not match its public key", {"id": identity.id})
        return identity


class IdentityManager:
    """Handles identity creation, storage, challenges and reputation."""

    def __init__(self, clock: Clock = SYSTEM_CLOCK, challenge_ttl_ms: int = 300_000) -> None:
        self.clock = clock
        self.challenge_ttl_ms = challenge_ttl_ms

        self.local_identity: CollectiveIdentity | None = None
        self.known_identities: dict[str, CollectiveIdentity] = {}
        self.pending_challenges: dict[str, int] = {}
        self.reputation_history: list[tuple[str, ReputationEvent]] = []

    def create_identity(self, display_name: str = "") -> CollectiveIdentity:
        self.local_identity = CollectiveIdentity.generate(self.clock.now(), display_name)
        logger.info(f"🆕 Created new identity: {self.local_identity.display_name} ({self.local_identity.id})")
        return self.local_identity

    async def load(self, path: Path) -> CollectiveIdentity | None:
        """Load the local identity from ``identity/identity.json``.

        Returns:
            The identity, or None when the file is absent or unreadable
        """
        try:
            raw = await read_json_async(path)
            if raw is None:
                return None
            if not isinstance(raw, dict):
                raise IntegrityError("Identity file must contain an object")
            self.local_identity = CollectiveIdentity.from_dict(raw)
        except IntegrityError as e:
            logger.warning(f"⚠️ Could not load identity from {path}: {e}")
            return None

        logger.info(f"🔐 Loaded identity: {self.local_identity.display_name} ({self.local_identity.id})")
        return self.local_identity

    async def save(self, path: Path) -> None:
        if self.local_identity is None:
            raise IntegrityError("No local identity to save")
        await write_json_atomic(path, self.local_identity.to_dict())

    async def load_or_create(self, path: Path) -> CollectiveIdentity:
        identity = await self.load(path)
        if identity is None:
            identity = self.create_identity()
            await self.save(path)
        return identity

    def create_challenge(self) -> str:
        """Issue a 32-byte hex challenge valid for ``challenge_ttl_ms``."""
        self._cleanup_expired_challenges()
        challenge = secrets.token_hex(32)
        self.pending_challenges[challenge] = self.clock.now()
        return challenge

    def verify_auth_response(
        self,
        challenge: str,
        identity_id: str,
        public_key: str,
        timestamp: int,
        signature: str,
    ) -> CollectiveIdentity:
        """Check a challenge response.

        The challenge is consumed by every attempt, successful or not.

        Returns:
            The (possibly newly) known identity

        Raises:
            AuthFailedError: Unknown or expired challenge, id not derived from
                the key, or a bad signature
        """
        issued_at = self.pending_challenges.pop(challenge, None)
        if issued_at is None:
            raise AuthFailedError("Unknown challenge", {"id": identity_id})

        now = self.clock.now()
        if now - issued_at > self.challenge_ttl_ms:
            raise AuthFailedError("Challenge expired", {"id": identity_id})

        if identity_id != derive_identity_id(public_key):
            raise AuthFailedError("Identity id does not match public key", {"id": identity_id})

        if not verify_signature(public_key, auth_message(challenge, timestamp, identity_id), signature):
            raise AuthFailedError("Invalid signature", {"id": identity_id})

        known = self.known_identities.get(identity_id)
        if known is None:
            known = CollectiveIdentity(id=identity_id, public_key=public_key, created_at=now)
            self.known_identities[identity_id] = known
        known.last_active = now
        return known

    def _cleanup_expired_challenges(self) -> None:
        now = self.clock.now()
        expired = [c for c, issued in self.pending_challenges.items() if now - issued > self.challenge_ttl_ms]
        for challenge in expired:
            del self.pending_challenges[challenge]

    def _find(self, identity_id: str) -> CollectiveIdentity | None:
        if self.local_identity is not None and self.local_identity.id == identity_id:
            return self.local_identity
        return self.known_identities.get(identity_id)

    def add_reputation(self, identity_id: str, event: ReputationEvent) -> int | None:
        """Apply a reputation event and promote trust level when earned.

        Returns:
            New reputation, or None for an unknown identity
        """
        identity = self._find(identity_id)
        if identity is None:
            logger.warning(f"Unknown identity: {identity_id}")
            return None

        old_reputation = identity.reputation
        identity.reputation += event.points
        identity.contributions[event.type] = identity.contributions.get(event.type, 0) + 1
        self.reputation_history.append((identity_id, event))
        self._update_trust_level(identity)

        logger.debug(
            f"📈 Reputation update for {identity.display_name}: "
            f"{old_reputation} -> {identity.reputation} ({event.reason})"
        )
        return identity.reputation

    def record_contribution(self, identity_id: str, reason: str) -> int | None:
        """Credit a served chunk and award contribution milestone badges."""
        reputation = self.add_reputation(
            identity_id, ReputationEvent("task_completed", int(ReputationPoints.TASK_COMPLETED), reason)
        )
        if reputation is None:
            return None

        completed = self._find(identity_id).contributions["task_completed"]
        for milestone, badge in CONTRIBUTION_BADGES:
            if completed == milestone:
                self.award_badge(identity_id, badge)
        return reputation

    def _update_trust_level(self, identity: CollectiveIdentity) -> None:
        for level, min_reputation, min_contributions in TRUST_THRESHOLDS:
            if (
                identity.reputation >= min_reputation
                and identity.total_contributions >= min_contributions
                and identity.trust_level < level
            ):
                logger.info(f"🏆 Trust level upgrade: {identity.display_name} is now {level.name}")
                identity.trust_level = level
                break

    def award_badge(self, identity_id: str, badge: Badge | str) -> bool:
        identity = self._find(identity_id)
        badge_value = badge.value if isinstance(badge, Badge) else badge
        if identity is None or badge_value in identity.badges:
            return False
        identity.badges.append(badge_value)
        logger.info(f"🏅 Badge awarded to {identity.display_name}: {badge_value}")
        return True

    def get_public_profile(self, identity_id: str) -> dict[str, Any] | None:
        identity = self._find(identity_id)
        return identity.to_public_profile() if identity else None

    def get_leaderboard(self, limit: int = 10) -> list[dict[str, Any]]:
        everyone = list(self.known_identities.values())
        if self.local_identity is not None:
            everyone.insert(0, self.local_identity)
        everyone.sort(key=lambda i: i.reputation, reverse=True)
        return [i.to_public_profile() for i in everyone[:limit]]
