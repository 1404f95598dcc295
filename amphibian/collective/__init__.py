"""Collective inference pool: identity, wire protocol, coordinator and worker."""

from amphibian.collective.coordinator import PoolCoordinator, PoolHealth, PoolState, TokenStream
from amphibian.collective.engine import CollectiveEngine
from amphibian.collective.identity import CollectiveIdentity, IdentityManager, TrustLevel
from amphibian.collective.scheduling import Capability, DeviceRecord, TaskKind, select_worker
from amphibian.collective.share_code import ShareCode, generate_share_code, parse_share_code
from amphibian.collective.transport import MessageChannel, memory_pipe
from amphibian.collective.worker import DeviceProfile, PoolWorker, classify_capability

__all__ = [
    "Capability",
    "CollectiveEngine",
    "CollectiveIdentity",
    "DeviceProfile",
    "DeviceRecord",
    "IdentityManager",
    "MessageChannel",
    "PoolCoordinator",
    "PoolHealth",
    "PoolState",
    "PoolWorker",
    "ShareCode",
    "TaskKind",
    "TokenStream",
    "TrustLevel",
    "classify_capability",
    "generate_share_code",
    "memory_pipe",
    "parse_share_code",
    "select_worker",
]
