"""
Unit tests for the relationship orchestrator.

Tests cover:
- UPSERT merge semantics and endpoint checks
- BULK_UPSERT replace semantics
- Membership and role flows
- QUERY active filtering
"""

import tempfile

import pytest

from dbaas.hera_server.orchestrate import (
    CallContext,
    EntityOrchestrator,
    RelationshipOrchestrator,
)
from dbaas.hera_server.orchestrate.errors import (
    ENTITY_NOT_FOUND,
    INVALID_STATUS,
    PAYLOAD_INVALID,
    PAIR_MISSING_ENDPOINT,
    RELATIONSHIP_NOT_FOUND,
    NotFoundError,
    ValidationError,
)
from dbaas.hera_server.schema.types import HAS_ROLE, MEMBER_OF
from dbaas.hera_server.store import UniversalStore

REL_SMART = "HERA.UNIVERSAL.REL.ASSIGNED.v1"
ENTITY_SMART = "HERA.UNIVERSAL.ENTITY.GENERIC.v1"

CTX_A = CallContext("org-a", "user-1")
CTX_B = CallContext("org-b", "user-2")


@pytest.fixture
def store():
    with tempfile.TemporaryDirectory() as tmpdir:
        yield UniversalStore(tmpdir, wal_mode=False)


@pytest.fixture
def relationships(store):
    return RelationshipOrchestrator(store)


@pytest.fixture
def make_entity(store):
    orchestrator = EntityOrchestrator(store)

    async def _make(name, entity_type="thing", ctx=CTX_A):
        result = await orchestrator.handle(
            ctx,
            "CREATE",
            {"entity_type": entity_type, "entity_name": name, "smart_code": ENTITY_SMART},
        )
        return result["entity_id"]

    return _make


def edge_payload(from_id, to_id, **extra):
    return {
        "from_entity_id": from_id,
        "to_entity_id": to_id,
        "relationship_type": "ASSIGNED_TO",
        "smart_code": REL_SMART,
        **extra,
    }


class TestUpsert:
    """Tests for UPSERT."""

    @pytest.mark.asyncio
    async def test_upsert_creates_then_updates(self, relationships, make_entity):
        a = await make_entity("A")
        b = await make_entity("B")

        first = await relationships.handle(
            CTX_A, "UPSERT", edge_payload(a, b, relationship_data={"weight": 1})
        )
        second = await relationships.handle(
            CTX_A, "UPSERT", edge_payload(a, b, relationship_data={"weight": 2})
        )
        assert first["relationship_id"] == second["relationship_id"]
        assert second["data"]["relationship_data"] == {"weight": 2}
        assert second["data"]["from_entity_name"] == "A"

    @pytest.mark.asyncio
    async def test_status_inactive(self, relationships, make_entity):
        a = await make_entity("A")
        b = await make_entity("B")
        result = await relationships.handle(CTX_A, "UPSERT", edge_payload(a, b, status="inactive"))
        assert result["data"]["is_active"] is False

        page = await relationships.handle(CTX_A, "QUERY", {"from_entity_id": a})
        assert page["data"]["items"] == []
        page = await relationships.handle(
            CTX_A, "QUERY", {"from_entity_id": a, "include_inactive": True}
        )
        assert len(page["data"]["items"]) == 1

    @pytest.mark.asyncio
    async def test_invalid_status(self, relationships, make_entity):
        a = await make_entity("A")
        b = await make_entity("B")
        with pytest.raises(ValidationError) as exc_info:
            await relationships.handle(CTX_A, "UPSERT", edge_payload(a, b, status="deleted"))
        assert exc_info.value.code == INVALID_STATUS

    @pytest.mark.asyncio
    async def test_missing_endpoint(self, relationships, make_entity):
        a = await make_entity("A")
        with pytest.raises(ValidationError) as exc_info:
            await relationships.handle(CTX_A, "UPSERT", edge_payload(a, ""))
        assert exc_info.value.code == PAIR_MISSING_ENDPOINT

    @pytest.mark.asyncio
    async def test_endpoint_in_other_org(self, relationships, make_entity):
        """Edges cannot reach into another organization."""
        a = await make_entity("A")
        foreign = await make_entity("F", ctx=CTX_B)
        with pytest.raises(NotFoundError) as exc_info:
            await relationships.handle(CTX_A, "UPSERT", edge_payload(a, foreign))
        assert exc_info.value.code == ENTITY_NOT_FOUND

    @pytest.mark.asyncio
    async def test_read_and_delete(self, relationships, make_entity):
        a = await make_entity("A")
        b = await make_entity("B")
        created = await relationships.handle(CTX_A, "CREATE", edge_payload(a, b))
        relationship_id = created["relationship_id"]

        read = await relationships.handle(CTX_A, "READ", {"relationship_id": relationship_id})
        assert read["data"]["to_entity_id"] == b

        with pytest.raises(NotFoundError):
            await relationships.handle(CTX_B, "READ", {"relationship_id": relationship_id})

        await relationships.handle(CTX_A, "DELETE", {"relationship_id": relationship_id})
        with pytest.raises(NotFoundError) as exc_info:
            await relationships.handle(CTX_A, "DELETE", {"relationship_id": relationship_id})
        assert exc_info.value.code == RELATIONSHIP_NOT_FOUND


class TestBulkUpsert:
    """Tests for BULK_UPSERT."""

    @pytest.mark.asyncio
    async def test_replace_not_merge(self, relationships, make_entity):
        """BULK_UPSERT(A->X) then BULK_UPSERT(A->Y) leaves only A->Y."""
        a = await make_entity("A")
        x = await make_entity("X")
        y = await make_entity("Y")
        payload = {"relationship_type": "ASSIGNED_TO", "smart_code": REL_SMART}

        await relationships.handle(
            CTX_A, "BULK_UPSERT", {**payload, "pairs": [{"from_entity_id": a, "to_entity_id": x}]}
        )
        result = await relationships.handle(
            CTX_A, "BULK_UPSERT", {**payload, "pairs": [{"from_entity_id": a, "to_entity_id": y}]}
        )
        assert result["data"]["inserted"] == 1
        assert result["data"]["removed"] == 1

        page = await relationships.handle(
            CTX_A,
            "QUERY",
            {"from_entity_id": a, "relationship_type": "ASSIGNED_TO", "include_inactive": True},
        )
        assert [item["to_entity_id"] for item in page["data"]["items"]] == [y]

    @pytest.mark.asyncio
    async def test_pair_data(self, relationships, make_entity):
        a = await make_entity("A")
        x = await make_entity("X")
        result = await relationships.handle(
            CTX_A,
            "BULK_UPSERT",
            {
                "relationship_type": "ASSIGNED_TO",
                "smart_code": REL_SMART,
                "pairs": [{"from_entity_id": a, "to_entity_id": x, "metadata": {"slot": 3}}],
            },
        )
        assert result["data"]["items"][0]["relationship_data"] == {"slot": 3}

    @pytest.mark.asyncio
    async def test_pair_missing_endpoint(self, relationships, make_entity):
        a = await make_entity("A")
        with pytest.raises(ValidationError) as exc_info:
            await relationships.handle(
                CTX_A,
                "BULK_UPSERT",
                {
                    "relationship_type": "ASSIGNED_TO",
                    "smart_code": REL_SMART,
                    "pairs": [{"from_entity_id": a}],
                },
            )
        assert exc_info.value.code == PAIR_MISSING_ENDPOINT

    @pytest.mark.asyncio
    async def test_missing_target_writes_nothing(self, relationships, make_entity, store):
        a = await make_entity("A")
        x = await make_entity("X")
        with pytest.raises(NotFoundError):
            await relationships.handle(
                CTX_A,
                "BULK_UPSERT",
                {
                    "relationship_type": "ASSIGNED_TO",
                    "smart_code": REL_SMART,
                    "pairs": [
                        {"from_entity_id": a, "to_entity_id": x},
                        {"from_entity_id": a, "to_entity_id": "missing"},
                    ],
                },
            )
        assert (await store.get_stats("org-a"))["relationships"] == 0


class TestMembershipAndRoles:
    """Tests for ASSIGN_MEMBERSHIP and SET_ROLES."""

    @pytest.mark.asyncio
    async def test_single_active_membership(self, relationships, make_entity):
        user = await make_entity("Jane", "user")
        org1 = await make_entity("Branch 1", "organization")
        org2 = await make_entity("Branch 2", "organization")

        first = await relationships.handle(
            CTX_A,
            "ASSIGN_MEMBERSHIP",
            {"user_entity_id": user, "organization_entity_id": org1, "role": "stylist"},
        )
        assert first["deactivated"] == 0
        assert first["data"]["relationship_type"] == MEMBER_OF
        assert first["data"]["relationship_data"] == {"role": "stylist"}

        second = await relationships.handle(
            CTX_A, "ASSIGN_MEMBERSHIP", {"user_entity_id": user, "organization_entity_id": org2}
        )
        assert second["deactivated"] == 1

        page = await relationships.handle(
            CTX_A, "QUERY", {"from_entity_id": user, "relationship_type": MEMBER_OF}
        )
        assert [item["to_entity_id"] for item in page["data"]["items"]] == [org2]

    @pytest.mark.asyncio
    async def test_set_roles_replaces(self, relationships, make_entity):
        user = await make_entity("Jane", "user")
        admin = await make_entity("Admin", "role")
        staff = await make_entity("Staff", "role")

        await relationships.handle(
            CTX_A, "SET_ROLES", {"user_entity_id": user, "role_entity_ids": [admin, staff]}
        )
        result = await relationships.handle(
            CTX_A, "SET_ROLES", {"user_entity_id": user, "role_entity_ids": [staff]}
        )
        assert result["data"]["removed"] == 2
        assert result["data"]["items"][0]["relationship_data"] == {"is_primary": True}

        page = await relationships.handle(
            CTX_A, "QUERY", {"from_entity_id": user, "relationship_type": HAS_ROLE}
        )
        assert [item["to_entity_id"] for item in page["data"]["items"]] == [staff]

    @pytest.mark.asyncio
    async def test_set_roles_empty_clears(self, relationships, make_entity):
        user = await make_entity("Jane", "user")
        admin = await make_entity("Admin", "role")
        await relationships.handle(
            CTX_A, "SET_ROLES", {"user_entity_id": user, "role_entity_ids": [admin]}
        )

        result = await relationships.handle(
            CTX_A, "SET_ROLES", {"user_entity_id": user, "role_entity_ids": []}
        )
        assert result["data"]["removed"] == 1
        assert result["data"]["inserted"] == 0


class TestQuery:
    """Tests for QUERY."""

    @pytest.mark.asyncio
    async def test_active_only_by_default(self, relationships, make_entity):
        a = await make_entity("A")
        b = await make_entity("B")
        c = await make_entity("C")
        await relationships.handle(CTX_A, "UPSERT", edge_payload(a, b))
        await relationships.handle(CTX_A, "UPSERT", edge_payload(a, c, status="inactive"))

        page = await relationships.handle(CTX_A, "QUERY", {"from_entity_id": a})
        assert [item["to_entity_id"] for item in page["data"]["items"]] == [b]

        page = await relationships.handle(
            CTX_A, "QUERY", {"from_entity_id": a, "include_inactive": True}
        )
        assert len(page["data"]["items"]) == 2

    @pytest.mark.asyncio
    async def test_other_org_sees_no_edges(self, relationships, make_entity):
        a = await make_entity("A")
        b = await make_entity("B")
        await relationships.handle(CTX_A, "UPSERT", edge_payload(a, b))

        for payload in (
            {},
            {"from_entity_id": a},
            {"to_entity_id": b},
            {"relationship_type": "ASSIGNED_TO", "include_inactive": True},
        ):
            page = await relationships.handle(CTX_B, "QUERY", payload)
            assert page["data"]["items"] == []

        page = await relationships.handle(CTX_A, "QUERY", {})
        assert len(page["data"]["items"]) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "payload",
        [
            {"from_entity_id": ["a"]},
            {"to_entity_id": 7},
            {"relationship_type": {"type": "ASSIGNED_TO"}},
        ],
    )
    async def test_filter_types(self, relationships, payload):
        with pytest.raises(ValidationError) as exc_info:
            await relationships.handle(CTX_A, "QUERY", payload)
        assert exc_info.value.code == PAYLOAD_INVALID

    @pytest.mark.asyncio
    async def test_relationship_id_type(self, relationships):
        with pytest.raises(ValidationError) as exc_info:
            await relationships.handle(CTX_A, "READ", {"relationship_id": 12})
        assert exc_info.value.code == PAYLOAD_INVALID
