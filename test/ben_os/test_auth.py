"""
Tests for agent API keys: generation, hashing, validation, capabilities,
rotation and revocation.
"""

import re

import pytest

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..', 'src'))

from ben_os.auth import (
    AgentAuthService, AgentNotFoundError, AuthError, DEFAULT_CAPABILITIES,
    generate_api_key, get_required_capability, has_capability, hash_api_key,
    validate_capabilities,
)


class TestKeyHelpers:

    def test_key_format(self):
        key = generate_api_key()
        assert re.fullmatch(r"bos_[A-Za-z0-9]{32}", key)
        assert generate_api_key() != key

    def test_hash_is_sha256_hex(self):
        digest = hash_api_key("bos_test")
        assert len(digest) == 64
        assert digest == hash_api_key("bos_test")

    def test_required_capability(self):
        assert get_required_capability("GET", "tasks") == "read:tasks"
        assert get_required_capability("delete", "tasks") == "write:tasks"
        assert get_required_capability("POST", "search") is None

    def test_admin_grants_everything(self):
        assert has_capability({"capabilities": ["admin"]}, "write:agents")
        assert not has_capability({"capabilities": ["read:tasks"]}, "write:tasks")
        assert not has_capability({"capabilities": None}, "read:tasks")

    def test_validate_capabilities(self):
        assert validate_capabilities(["read:tasks", "admin"]) == ["read:tasks", "admin"]
        with pytest.raises(ValueError, match="Invalid capability: fly:tasks"):
            validate_capabilities(["fly:tasks"])


class TestAgentAuthService:

    @pytest.fixture
    def service(self, temp_db):
        return AgentAuthService(temp_db)

    def test_register_hides_hash(self, service, temp_db):
        agent, key = service.register_agent("Worker")
        assert "api_key_hash" not in agent
        assert agent["capabilities"] == DEFAULT_CAPABILITIES
        assert agent["type"] == "task"
        stored = temp_db.get_agent(agent["id"])
        assert stored["api_key_hash"] == hash_api_key(key)

    def test_validate_touches_last_active(self, service, temp_db):
        agent, key = service.register_agent("Worker")
        assert service.validate_api_key(key)["id"] == agent["id"]
        assert temp_db.get_agent(agent["id"])["last_active_at"] is not None

    def test_validate_rejects_bad_keys(self, service):
        service.register_agent("Worker")
        assert service.validate_api_key(None) is None
        assert service.validate_api_key("sk_wrongprefix") is None
        assert service.validate_api_key("bos_" + "x" * 32) is None

    def test_authenticate_missing_header(self, service):
        with pytest.raises(AuthError) as exc_info:
            service.authenticate(None, "tasks", "GET")
        assert exc_info.value.status_code == 401
        assert exc_info.value.message == "Missing or invalid Authorization header"

    def test_authenticate_unknown_key(self, service):
        with pytest.raises(AuthError) as exc_info:
            service.authenticate("Bearer bos_unknown", "tasks", "GET")
        assert exc_info.value.status_code == 401
        assert exc_info.value.message == "Invalid or revoked API key"

    def test_authenticate_capabilities(self, service):
        agent, key = service.register_agent("Reader")
        assert service.authenticate(f"Bearer {key}", "tasks", "GET")["id"] == agent["id"]

        with pytest.raises(AuthError) as exc_info:
            service.authenticate(f"Bearer {key}", "tasks", "POST")
        assert exc_info.value.status_code == 403
        assert exc_info.value.message == "Insufficient permissions. Required: write:tasks"

    def test_rotate_invalidates_old_key(self, service):
        agent, old_key = service.register_agent("Worker")
        _, new_key = service.rotate_api_key(agent["id"])
        assert new_key != old_key
        assert service.validate_api_key(old_key) is None
        assert service.validate_api_key(new_key)["id"] == agent["id"]

    def test_revoke_and_reactivate(self, service):
        agent, key = service.register_agent("Worker")
        assert service.revoke_agent(agent["id"])["is_active"] is False
        assert service.validate_api_key(key) is None
        assert service.reactivate_agent(agent["id"])["is_active"] is True
        assert service.validate_api_key(key) is not None

    def test_unknown_agent(self, service):
        with pytest.raises(AgentNotFoundError):
            service.rotate_api_key("missing")
        with pytest.raises(AgentNotFoundError):
            service.revoke_agent("missing")

    def test_activity_context(self, service):
        agent, key = service.register_agent("Worker")
        context = service.activity_context(f"Bearer {key}")
        assert (context.agent_id, context.user_initiated) == (agent["id"], False)

        anonymous = service.activity_context(None)
        assert (anonymous.agent_id, anonymous.user_initiated) == (None, True)

    def test_list_agents(self, service):
        service.register_agent("One")
        service.register_agent("Two", "primary", ["admin"])
        agents = service.list_agents()
        assert [a["name"] for a in agents] == ["One", "Two"]
        assert all("api_key_hash" not in a for a in agents)
