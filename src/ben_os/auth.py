"""
Agent Authentication

API keys for AI agents: generation (`bos_` prefix + 32 alphanumerics),
SHA-256 hashing for storage, validation against active agents, capability
checks, rotation and revocation. Only hashes are persisted; the plaintext
key is returned once, at registration or rotation.
"""

import hashlib
import logging
import secrets
import string
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

API_KEY_PREFIX = "bos_"
API_KEY_RANDOM_LENGTH = 32
CHARSET = string.ascii_uppercase + string.ascii_lowercase + string.digits

RESOURCES = ("tasks", "projects", "boards", "areas", "milestones", "prds", "reports", "agents")
READ_METHODS = {"GET", "HEAD", "OPTIONS"}

DEFAULT_CAPABILITIES = [
    "read:tasks",
    "read:projects",
    "read:boards",
    "read:areas",
    "read:milestones",
    "read:prds",
    "read:reports",
]

ADMIN_CAPABILITIES = [f"{action}:{resource}" for resource in RESOURCES
                      for action in ("read", "write")] + ["admin"]

ALL_CAPABILITIES = set(ADMIN_CAPABILITIES)


class AuthError(Exception):
    """Authentication or authorization failure carrying an HTTP status."""

    def __init__(self, status_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.message = message


class AgentNotFoundError(LookupError):
    """Raised when an agent id does not exist."""


@dataclass
class ActivityContext:
    """Who a mutation is attributed to in the activity log."""
    agent_id: Optional[str]
    user_initiated: bool


def generate_api_key() -> str:
    """Return a new plaintext key: `bos_` followed by 32 random alphanumerics."""
    random_bytes = secrets.token_bytes(API_KEY_RANDOM_LENGTH)
    return API_KEY_PREFIX + "".join(CHARSET[b % len(CHARSET)] for b in random_bytes)


def hash_api_key(api_key: str) -> str:
    """SHA-256 hex digest of a key, as stored in agents.api_key_hash."""
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()


def has_capability(agent: Dict[str, Any], capability: str) -> bool:
    """`admin` grants every capability."""
    capabilities = agent.get("capabilities") or []
    return "admin" in capabilities or capability in capabilities


def get_required_capability(method: str, resource: str) -> Optional[str]:
    """
    Capability needed for an HTTP method on a resource.

    Returns:
        "read:<resource>" for safe methods, "write:<resource>" otherwise,
        None for resources outside the capability model
    """
    if resource not in RESOURCES:
        return None
    action = "read" if method.upper() in READ_METHODS else "write"
    return f"{action}:{resource}"


def extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization or not authorization.startswith("Bearer "):
        return None
    token = authorization[len("Bearer "):].strip()
    return token or None


def public_agent(agent: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Agent dict without its key hash."""
    if agent is None:
        return None
    return {k: v for k, v in agent.items() if k != "api_key_hash"}


def validate_capabilities(capabilities: List[str]) -> List[str]:
    """Raise ValueError naming the first unknown capability."""
    for capability in capabilities:
        if capability not in ALL_CAPABILITIES:
            raise ValueError(f"Invalid capability: {capability}")
    return capabilities


class AgentAuthService:
    """
    Agent registry and API key checks on top of BenOSDatabase.
    """

    def __init__(self, database):
        self.db = database

    def register_agent(self, name: str, type: str = "task",
                       capabilities: Optional[List[str]] = None) -> Tuple[Dict[str, Any], str]:
        """
        Register a new agent.

        Args:
            name: Display name
            type: "primary" or "task"
            capabilities: Capability list, DEFAULT_CAPABILITIES when omitted

        Returns:
            (agent without key hash, plaintext API key)
        """
        api_key = generate_api_key()
        agent = self.db.insert_agent(
            name=name,
            type=type,
            capabilities=list(capabilities) if capabilities is not None else list(DEFAULT_CAPABILITIES),
            api_key_hash=hash_api_key(api_key),
        )
        logger.info(f"Registered agent {agent['id']} ({name})")
        return public_agent(agent), api_key

    def validate_api_key(self, api_key: Optional[str]) -> Optional[Dict[str, Any]]:
        """
        Resolve a plaintext key to its active agent and record the activity time.

        Returns:
            The agent, or None for malformed, unknown or revoked keys
        """
        if not api_key or not api_key.startswith(API_KEY_PREFIX):
            return None
        agent = self.db.get_agent_by_key_hash(hash_api_key(api_key))
        if not agent or not agent.get("is_active"):
            return None
        try:
            self.db.touch_agent_last_active(agent["id"])
        except Exception as e:
            logger.warning(f"Failed to update last_active_at for agent {agent['id']}: {e}")
        return agent

    def authenticate(self, authorization: Optional[str], resource: str,
                     method: str) -> Dict[str, Any]:
        """
        Authenticate a request and check the capability for `method` on `resource`.

        Raises:
            AuthError: 401 for missing/invalid keys, 403 for missing capability
        """
        token = extract_bearer_token(authorization)
        if not token:
            raise AuthError(401, "Missing or invalid Authorization header")

        agent = self.validate_api_key(token)
        if not agent:
            raise AuthError(401, "Invalid or revoked API key")

        required = get_required_capability(method, resource)
        if required and not has_capability(agent, required):
            raise AuthError(403, f"Insufficient permissions. Required: {required}")
        return agent

    def activity_context(self, authorization: Optional[str]) -> ActivityContext:
        """Attribute a request to its agent when it carries a valid key."""
        agent = self.validate_api_key(extract_bearer_token(authorization))
        if agent:
            return ActivityContext(agent_id=agent["id"], user_initiated=False)
        return ActivityContext(agent_id=None, user_initiated=True)

    def rotate_api_key(self, agent_id: str) -> Tuple[Dict[str, Any], str]:
        """
        Replace an agent's key; the old key stops working immediately.

        Raises:
            AgentNotFoundError: If the agent does not exist
        """
        api_key = generate_api_key()
        agent = self.db.update_agent(agent_id, {"api_key_hash": hash_api_key(api_key)})
        if not agent:
            raise AgentNotFoundError("Agent not found")
        logger.info(f"Rotated API key for agent {agent_id}")
        return public_agent(agent), api_key

    def revoke_agent(self, agent_id: str) -> Dict[str, Any]:
        agent = self.db.update_agent(agent_id, {"is_active": False})
        if not agent:
            raise AgentNotFoundError("Agent not found")
        logger.info(f"Revoked agent {agent_id}")
        return public_agent(agent)

    def reactivate_agent(self, agent_id: str) -> Dict[str, Any]:
        agent = self.db.update_agent(agent_id, {"is_active": True})
        if not agent:
            raise AgentNotFoundError("Agent not found")
        logger.info(f"Reactivated agent {agent_id}")
        return public_agent(agent)

    def list_agents(self) -> List[Dict[str, Any]]:
        return [public_agent(agent) for agent in self.db.list_agents()]


def extract_activity_context(headers, service: AgentAuthService) -> ActivityContext:
    """Activity attribution for a request's headers (case-insensitive mapping)."""
    return service.activity_context(headers.get("authorization"))
