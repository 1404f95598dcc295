"""Tests for collective identity and challenge/response authentication."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from amphibian.clock import VirtualClock
from amphibian.collective.identity import (
    Badge,
    CollectiveIdentity,
    IdentityManager,
    Permission,
    ReputationEvent,
    TrustLevel,
    auth_message,
    derive_identity_id,
    verify_signature,
)
from amphibian.errors import AuthFailedError, IntegrityError


@pytest.fixture
def manager(clock: VirtualClock) -> IdentityManager:
    return IdentityManager(clock, challenge_ttl_ms=300_000)


def _respond(identity: CollectiveIdentity, challenge: str, now: int) -> tuple[str, str, str, int, str]:
    response = identity.create_auth_response(challenge, now)
    return challenge, response["id"], response["publicKey"], response["timestamp"], response["signature"]


class TestCollectiveIdentity:
    """Test suite for key pairs and ids."""

    def test_id_derived_from_public_key(self, clock: VirtualClock) -> None:
        """The id is the first 16 hex chars of sha256(public key)."""
        identity = CollectiveIdentity.generate(clock.now())

        assert len(identity.id) == 16
        assert identity.id == derive_identity_id(identity.public_key)
        assert identity.display_name

    def test_sign_requires_private_key(self, clock: VirtualClock) -> None:
        """Remote identities cannot sign."""
        local = CollectiveIdentity.generate(clock.now())
        remote = CollectiveIdentity(id=local.id, public_key=local.public_key)

        with pytest.raises(AuthFailedError):
            remote.sign(b"hello")

    def test_public_profile_hides_private_key(self, clock: VirtualClock) -> None:
        """Profiles never include the private key."""
        profile = CollectiveIdentity.generate(clock.now(), "Pond").to_public_profile()

        assert profile["displayName"] == "Pond"
        assert "privateKey" not in profile

    def test_from_dict_rejects_mismatched_id(self, clock: VirtualClock) -> None:
        """A stored id must match its key."""
        data = CollectiveIdentity.generate(clock.now()).to_dict()
        data["id"] = "0" * 16

        with pytest.raises(IntegrityError):
            CollectiveIdentity.from_dict(data)

    def test_signature_round_trip(self, clock: VirtualClock) -> None:
        """A signature verifies against its own key and message only."""
        identity = CollectiveIdentity.generate(clock.now())
        other = CollectiveIdentity.generate(clock.now())
        message = auth_message("c" * 64, clock.now(), identity.id)

        signature = identity.sign(message)

        assert verify_signature(identity.public_key, message, signature)
        assert not verify_signature(identity.public_key, message + b"x", signature)
        assert not verify_signature(other.public_key, message, signature)
        assert not verify_signature(identity.public_key, message, "not base64!")

    def test_auth_response_verifies(self, clock: VirtualClock) -> None:
        """The fields of an auth response carry a valid signature."""
        identity = CollectiveIdentity.generate(clock.now())

        response = identity.create_auth_response("ab" * 32, clock.now())

        message = auth_message("ab" * 32, response["timestamp"], response["id"])
        assert verify_signature(response["publicKey"], message, response["signature"])

    @pytest.mark.parametrize(
        ("field", "value"),
        [("contributions", ["chunks"]), ("contributions", 3), ("metadata", 7), ("trustLevel", "high")],
    )
    def test_from_dict_rejects_malformed_fields(self, clock: VirtualClock, field: str, value) -> None:
        """Wrongly typed fields are integrity errors."""
        data = CollectiveIdentity.generate(clock.now()).to_dict()
        data[field] = value

        with pytest.raises(IntegrityError):
            CollectiveIdentity.from_dict(data)


class TestChallenges:
    """Test suite for challenge/response verification."""

    def test_valid_response(self, manager: IdentityManager, clock: VirtualClock) -> None:
        """A fresh, correctly signed response authenticates."""
        identity = CollectiveIdentity.generate(clock.now())
        challenge = manager.create_challenge()

        known = manager.verify_auth_response(*_respond(identity, challenge, clock.now()))

        assert known.id == identity.id
        assert known.private_key is None
        assert identity.id in manager.known_identities

    def test_challenge_is_single_use(self, manager: IdentityManager, clock: VirtualClock) -> None:
        """Replaying a consumed challenge fails."""
        identity = CollectiveIdentity.generate(clock.now())
        challenge = manager.create_challenge()
        args = _respond(identity, challenge, clock.now())
        manager.verify_auth_response(*args)

        with pytest.raises(AuthFailedError, match="Unknown challenge"):
            manager.verify_auth_response(*args)

    def test_expired_challenge(self, manager: IdentityManager, clock: VirtualClock) -> None:
        """Challenges older than the TTL are rejected."""
        identity = CollectiveIdentity.generate(clock.now())
        challenge = manager.create_challenge()
        clock.advance(300_001)

        with pytest.raises(AuthFailedError, match="expired"):
            manager.verify_auth_response(*_respond(identity, challenge, clock.now()))

    def test_bad_signature(self, manager: IdentityManager, clock: VirtualClock) -> None:
        """A signature over a different challenge is rejected."""
        identity = CollectiveIdentity.generate(clock.now())
        challenge = manager.create_challenge()
        _, identity_id, public_key, timestamp, _ = _respond(identity, challenge, clock.now())
        forged = identity.create_auth_response("f" * 64, clock.now())["signature"]

        with pytest.raises(AuthFailedError, match="Invalid signature"):
            manager.verify_auth_response(challenge, identity_id, public_key, timestamp, forged)

    def test_id_not_matching_key(self, manager: IdentityManager, clock: VirtualClock) -> None:
        """Claiming another identity's id with your own key fails."""
        mine = CollectiveIdentity.generate(clock.now())
        theirs = CollectiveIdentity.generate(clock.now())
        challenge = manager.create_challenge()
        _, _, public_key, timestamp, signature = _respond(mine, challenge, clock.now())

        with pytest.raises(AuthFailedError):
            manager.verify_auth_response(challenge, theirs.id, public_key, timestamp, signature)

    def test_garbage_key_is_auth_failure(self, manager: IdentityManager, clock: VirtualClock) -> None:
        """Malformed keys and signatures never raise anything but AuthFailedError."""
        challenge = manager.create_challenge()
        bogus_key = "zz" * 32

        with pytest.raises(AuthFailedError):
            manager.verify_auth_response(challenge, derive_identity_id(bogus_key), bogus_key, clock.now(), "###")


class TestPersistenceAndReputation:
    """Test suite for identity storage and reputation."""

    @pytest.mark.asyncio
    async def test_load_or_create(self, manager: IdentityManager, tmp_path: Path, clock: VirtualClock) -> None:
        """The first call creates and saves; the second loads the same identity."""
        path = tmp_path / "identity" / "identity.json"

        created = await manager.load_or_create(path)
        loaded = await IdentityManager(clock).load_or_create(path)

        assert loaded.id == created.id
        assert loaded.private_key == created.private_key
        assert json.loads(path.read_text())["publicKey"] == created.public_key

    @pytest.mark.asyncio
    async def test_corrupt_identity_file(self, manager: IdentityManager, tmp_path: Path) -> None:
        """A corrupt identity file loads as None."""
        path = tmp_path / "identity.json"
        path.write_text("{")

        assert await manager.load(path) is None

    @pytest.mark.asyncio
    async def test_malformed_identity_is_regenerated(
        self, manager: IdentityManager, tmp_path: Path, clock: VirtualClock
    ) -> None:
        """A wrongly typed field makes load_or_create start a new identity."""
        path = tmp_path / "identity.json"
        data = CollectiveIdentity.generate(clock.now()).to_dict()
        data["contributions"] = ["chunks"]
        path.write_text(json.dumps(data))

        assert await manager.load(path) is None
        replacement = await manager.load_or_create(path)

        assert replacement.id != data["id"]
        assert json.loads(path.read_text())["id"] == replacement.id

    @pytest.mark.asyncio
    async def test_save_without_identity(self, manager: IdentityManager, tmp_path: Path) -> None:
        """Saving before creating is an integrity error."""
        with pytest.raises(IntegrityError):
            await manager.save(tmp_path / "identity.json")

    def test_reputation_promotes_trust(self, manager: IdentityManager) -> None:
        """Enough reputation and contributions raise the trust level."""
        identity = manager.create_identity("Worker")
        for _ in range(10):
            manager.add_reputation(identity.id, ReputationEvent("task_completed", 10, "chunk served"))

        assert identity.reputation == 100
        assert identity.trust_level == TrustLevel.TRUSTED
        assert identity.has_permission(Permission.CONTRIBUTE_TRAINING)
        assert manager.add_reputation("unknown", ReputationEvent("x", 1, "y")) is None

    def test_badges_awarded_once(self, manager: IdentityManager) -> None:
        """A badge can only be awarded once."""
        identity = manager.create_identity()

        assert manager.award_badge(identity.id, Badge.FIRST_CONTRIBUTION)
        assert not manager.award_badge(identity.id, Badge.FIRST_CONTRIBUTION)
        assert manager.get_leaderboard()[0]["badges"] == ["first_contribution"]

    def test_public_profile_lookup(self, manager: IdentityManager) -> None:
        """Profiles are served for known identities only."""
        identity = manager.create_identity("Phone")

        profile = manager.get_public_profile(identity.id)

        assert profile is not None
        assert profile["displayName"] == "Phone"
        assert "privateKey" not in profile
        assert manager.get_public_profile("0" * 16) is None

    def test_contributions_earn_milestone_badges(self, manager: IdentityManager) -> None:
        """Served chunks add reputation and unlock contribution badges."""
        identity = manager.create_identity()

        for n in range(10):
            assert manager.record_contribution(identity.id, f"chunk {n}") == 10 * (n + 1)

        assert identity.contributions == {"task_completed": 10}
        assert identity.badges == ["first_contribution", "10_contributions"]
        assert identity.trust_level == TrustLevel.TRUSTED
        assert manager.record_contribution("0" * 16, "chunk") is None
