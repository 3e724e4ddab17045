"""
Unit tests for the entity orchestrator and the dynamic data batch writer.

Tests cover:
- CREATE with smart code gating and inline dynamic fields
- READ / UPDATE / QUERY / DELETE semantics
- Dynamic field typing and round-trip
- Organization isolation
"""

import tempfile

import pytest

from dbaas.hera_server.orchestrate import (
    CallContext,
    DynamicDataOrchestrator,
    EntityOrchestrator,
    RelationshipOrchestrator,
    SmartCodePolicy,
)
from dbaas.hera_server.orchestrate.errors import (
    ENTITY_CODE_DUPLICATE,
    ENTITY_HAS_DEPENDENCIES,
    ENTITY_NAME_REQUIRED,
    ENTITY_NOT_FOUND,
    FIELD_NOT_FOUND,
    FIELD_TYPE_INVALID,
    FIELD_TYPE_VALUE_MISMATCH,
    ORG_MISMATCH,
    PATCH_FIELD_NOT_ALLOWED,
    PAYLOAD_INVALID,
    SMART_CODE_INVALID,
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from dbaas.hera_server.schema.smart_code import SmartCodeRegistry
from dbaas.hera_server.store import UniversalStore

SMART = "HERA.CRM.CUSTOMER.ENTITY.PROFILE.v1"
FIELD_SMART = "HERA.CRM.CUSTOMER.DYN.CREDIT.v1"

CTX_A = CallContext("org-a", "user-1")
CTX_B = CallContext("org-b", "user-2")


@pytest.fixture
def store():
    with tempfile.TemporaryDirectory() as tmpdir:
        yield UniversalStore(tmpdir, wal_mode=False)


@pytest.fixture
def entities(store):
    return EntityOrchestrator(store)


@pytest.fixture
def dynamic(store):
    return DynamicDataOrchestrator(store)


async def create_customer(entities, ctx=CTX_A, name="Acme", **extra):
    payload = {"entity_type": "customer", "entity_name": name, "smart_code": SMART, **extra}
    return await entities.handle(ctx, "CREATE", payload)


class TestEntityCreate:
    """Tests for CREATE."""

    @pytest.mark.asyncio
    async def test_create_returns_entity(self, entities):
        result = await create_customer(entities, entity_code="CUST-001")

        assert result["entity_id"]
        data = result["data"]
        assert data["id"] == result["entity_id"]
        assert data["organization_id"] == "org-a"
        assert data["entity_code"] == "CUST-001"
        assert data["status"] == "active"
        assert data["created_by"] == "user-1"
        assert data["dynamic"] == {}

    @pytest.mark.asyncio
    async def test_create_with_dynamic_fields(self, entities):
        """Fields given at create time are written in the same unit."""
        result = await create_customer(
            entities,
            dynamic={
                "credit_limit": {"field_type": "number", "value": 5000},
                "vip": {"field_type": "boolean", "field_value_boolean": True},
            },
        )
        assert result["data"]["dynamic"] == {"credit_limit": 5000.0, "vip": True}

    @pytest.mark.asyncio
    async def test_invalid_smart_code_rejected(self, entities, store):
        with pytest.raises(ValidationError) as exc_info:
            await entities.handle(
                CTX_A,
                "CREATE",
                {"entity_type": "customer", "entity_name": "Acme", "smart_code": "crm.customer"},
            )
        assert exc_info.value.code == SMART_CODE_INVALID
        assert (await store.get_stats("org-a"))["entities"] == 0

    @pytest.mark.asyncio
    async def test_missing_name(self, entities):
        with pytest.raises(ValidationError) as exc_info:
            await entities.handle(
                CTX_A, "CREATE", {"entity_type": "customer", "smart_code": SMART}
            )
        assert exc_info.value.code == ENTITY_NAME_REQUIRED

    @pytest.mark.asyncio
    async def test_invalid_dynamic_field_writes_nothing(self, entities, store):
        """A bad field rejects the entity too."""
        with pytest.raises(ValidationError) as exc_info:
            await create_customer(
                entities, dynamic={"credit_limit": {"field_type": "number", "value": "lots"}}
            )
        assert exc_info.value.code == FIELD_TYPE_VALUE_MISMATCH
        assert (await store.get_stats("org-a"))["entities"] == 0

    @pytest.mark.asyncio
    async def test_duplicate_code(self, entities):
        await create_customer(entities, entity_code="CUST-001")
        with pytest.raises(ConflictError) as exc_info:
            await create_customer(entities, name="Other", entity_code="CUST-001")
        assert exc_info.value.code == ENTITY_CODE_DUPLICATE

    @pytest.mark.asyncio
    async def test_payload_org_must_match(self, entities):
        with pytest.raises(AuthorizationError) as exc_info:
            await create_customer(entities, organization_id="org-b")
        assert exc_info.value.code == ORG_MISMATCH

    @pytest.mark.asyncio
    async def test_registry_policy(self, store):
        """With a registry, unknown domains are rejected."""
        strict = EntityOrchestrator(
            store, SmartCodePolicy(registry=SmartCodeRegistry({"SALON"}))
        )
        with pytest.raises(ValidationError):
            await create_customer(strict)


class TestEntityReadUpdate:
    """Tests for READ and UPDATE."""

    @pytest.mark.asyncio
    async def test_read_includes_dynamic(self, entities):
        created = await create_customer(
            entities, dynamic={"phone": {"field_type": "text", "value": "555-0100"}}
        )
        result = await entities.handle(CTX_A, "READ", {"entity_id": created["entity_id"]})
        assert result["data"]["dynamic"] == {"phone": "555-0100"}

        bare = await entities.handle(
            CTX_A, "READ", {"entity_id": created["entity_id"], "include_dynamic": False}
        )
        assert "dynamic" not in bare["data"]

    @pytest.mark.asyncio
    async def test_read_other_org_not_found(self, entities):
        """Reads never cross organizations."""
        created = await create_customer(entities)
        with pytest.raises(NotFoundError) as exc_info:
            await entities.handle(CTX_B, "READ", {"entity_id": created["entity_id"]})
        assert exc_info.value.code == ENTITY_NOT_FOUND

    @pytest.mark.asyncio
    async def test_update_patch(self, entities):
        created = await create_customer(entities, metadata={"a": 1})
        result = await entities.handle(
            CTX_A,
            "UPDATE",
            {
                "entity_id": created["entity_id"],
                "patch": {"entity_name": "Acme Ltd", "status": "archived", "metadata": {"b": 2}},
            },
        )
        data = result["data"]
        assert data["entity_name"] == "Acme Ltd"
        assert data["status"] == "archived"
        assert data["metadata"] == {"a": 1, "b": 2}
        assert data["entity_type"] == "customer"

    @pytest.mark.asyncio
    async def test_update_rejects_unknown_field(self, entities):
        created = await create_customer(entities)
        with pytest.raises(ValidationError) as exc_info:
            await entities.handle(
                CTX_A,
                "UPDATE",
                {"entity_id": created["entity_id"], "patch": {"organization_id_x": "y"}},
            )
        assert exc_info.value.code == PATCH_FIELD_NOT_ALLOWED

    @pytest.mark.asyncio
    async def test_update_other_org(self, entities):
        created = await create_customer(entities)
        with pytest.raises(NotFoundError):
            await entities.handle(
                CTX_B,
                "UPDATE",
                {"entity_id": created["entity_id"], "patch": {"entity_name": "Stolen"}},
            )

    @pytest.mark.asyncio
    async def test_update_dynamic(self, entities):
        """patch.dynamic upserts fields next to the column changes."""
        created = await create_customer(
            entities, dynamic={"credit_limit": {"field_type": "number", "value": 100}}
        )
        result = await entities.handle(
            CTX_A,
            "UPDATE",
            {
                "entity_id": created["entity_id"],
                "patch": {
                    "entity_name": "Acme Ltd",
                    "dynamic": {
                        "credit_limit": {"field_type": "number", "value": 250},
                        "tier": {"field_type": "text", "value": "gold"},
                    },
                },
            },
        )
        assert result["data"]["entity_name"] == "Acme Ltd"
        assert result["data"]["dynamic"] == {"credit_limit": 250.0, "tier": "gold"}

        read = await entities.handle(CTX_A, "READ", {"entity_id": created["entity_id"]})
        assert read["data"]["dynamic"] == {"credit_limit": 250.0, "tier": "gold"}

    @pytest.mark.asyncio
    async def test_update_bad_dynamic_writes_nothing(self, entities):
        created = await create_customer(entities)
        with pytest.raises(ValidationError) as exc_info:
            await entities.handle(
                CTX_A,
                "UPDATE",
                {
                    "entity_id": created["entity_id"],
                    "patch": {
                        "entity_name": "Renamed",
                        "dynamic": {"credit_limit": {"field_type": "number", "value": "lots"}},
                    },
                },
            )
        assert exc_info.value.code == FIELD_TYPE_VALUE_MISMATCH

        read = await entities.handle(CTX_A, "READ", {"entity_id": created["entity_id"]})
        assert read["data"]["entity_name"] == "Acme"
        assert read["data"]["dynamic"] == {}

    @pytest.mark.asyncio
    async def test_update_dynamic_other_org(self, entities):
        created = await create_customer(entities)
        with pytest.raises(NotFoundError):
            await entities.handle(
                CTX_B,
                "UPDATE",
                {
                    "entity_id": created["entity_id"],
                    "patch": {"dynamic": {"tier": {"field_type": "text", "value": "x"}}},
                },
            )

    @pytest.mark.asyncio
    async def test_read_include_relationships(self, entities, store):
        a = await create_customer(entities, name="A")
        b = await create_customer(entities, name="B")
        c = await create_customer(entities, name="C")
        rels = RelationshipOrchestrator(store)
        for target, rel_type, status in (
            (b, "REFERRED_BY", "active"),
            (c, "ASSIGNED_TO", "active"),
            (c, "PREFERS", "inactive"),
        ):
            await rels.handle(
                CTX_A,
                "UPSERT",
                {
                    "from_entity_id": a["entity_id"],
                    "to_entity_id": target["entity_id"],
                    "relationship_type": rel_type,
                    "smart_code": "HERA.CRM.REL.LINK.v1",
                    "status": status,
                },
            )

        result = await entities.handle(
            CTX_A, "READ", {"entity_id": a["entity_id"], "include_relationships": True}
        )
        grouped = result["data"]["relationships"]
        assert sorted(grouped) == ["ASSIGNED_TO", "REFERRED_BY"]
        assert [edge["to_entity_id"] for edge in grouped["REFERRED_BY"]] == [b["entity_id"]]

        plain = await entities.handle(CTX_A, "READ", {"entity_id": a["entity_id"]})
        assert "relationships" not in plain["data"]

    @pytest.mark.asyncio
    async def test_entity_id_must_be_string(self, entities):
        with pytest.raises(ValidationError) as exc_info:
            await entities.handle(CTX_A, "READ", {"entity_id": ["x"]})
        assert exc_info.value.code == PAYLOAD_INVALID


class TestEntityQuery:
    """Tests for QUERY."""

    @pytest.mark.asyncio
    async def test_query_page(self, entities):
        for index in range(3):
            await create_customer(
                entities,
                name=f"Customer {index}",
                dynamic={"rank": {"field_type": "number", "value": index}},
            )
        await create_customer(entities, ctx=CTX_B, name="Foreign")

        result = await entities.handle(
            CTX_A,
            "QUERY",
            {"filters": {"entity_type": "customer"}, "limit": 2, "include_dynamic": True},
        )
        data = result["data"]
        assert data["total"] == 3
        assert data["limit"] == 2
        assert [item["entity_name"] for item in data["items"]] == ["Customer 0", "Customer 1"]
        assert [item["dynamic"]["rank"] for item in data["items"]] == [0.0, 1.0]

    @pytest.mark.asyncio
    async def test_query_unknown_filter(self, entities):
        with pytest.raises(ValidationError) as exc_info:
            await entities.handle(CTX_A, "QUERY", {"filters": {"colour": "red"}})
        assert exc_info.value.code == PAYLOAD_INVALID

    @pytest.mark.asyncio
    async def test_query_limit_bounds(self, entities):
        with pytest.raises(ValidationError):
            await entities.handle(CTX_A, "QUERY", {"limit": 0})
        with pytest.raises(ValidationError):
            await entities.handle(CTX_A, "QUERY", {"limit": 5000})

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "filters",
        [
            {"entity_type": ["customer"]},
            {"status": 1},
            {"smart_code_prefix": {"p": "HERA"}},
            {"search": ["Acme"]},
        ],
    )
    async def test_query_filter_types(self, entities, filters):
        with pytest.raises(ValidationError) as exc_info:
            await entities.handle(CTX_A, "QUERY", {"filters": filters})
        assert exc_info.value.code == PAYLOAD_INVALID

    @pytest.mark.asyncio
    async def test_query_include_relationships(self, entities, store):
        a = await create_customer(entities, name="A")
        b = await create_customer(entities, name="B")
        await RelationshipOrchestrator(store).handle(
            CTX_A,
            "UPSERT",
            {
                "from_entity_id": a["entity_id"],
                "to_entity_id": b["entity_id"],
                "relationship_type": "REFERRED_BY",
                "smart_code": "HERA.CRM.REL.REFERRAL.v1",
            },
        )

        result = await entities.handle(CTX_A, "QUERY", {"include_relationships": True})
        by_name = {item["entity_name"]: item for item in result["data"]["items"]}
        assert list(by_name["A"]["relationships"]) == ["REFERRED_BY"]
        assert by_name["B"]["relationships"] == {}


class TestEntityDelete:
    """Tests for DELETE."""

    @pytest.mark.asyncio
    async def test_delete_unreferenced(self, entities):
        created = await create_customer(entities)
        result = await entities.handle(CTX_A, "DELETE", {"entity_id": created["entity_id"]})
        assert result["deleted"] is True

        with pytest.raises(NotFoundError):
            await entities.handle(CTX_A, "READ", {"entity_id": created["entity_id"]})

    @pytest.mark.asyncio
    async def test_delete_referenced(self, entities, store):
        a = await create_customer(entities, name="A")
        b = await create_customer(entities, name="B")
        await RelationshipOrchestrator(store).handle(
            CTX_A,
            "UPSERT",
            {
                "from_entity_id": a["entity_id"],
                "to_entity_id": b["entity_id"],
                "relationship_type": "REFERRED_BY",
                "smart_code": "HERA.CRM.REL.REFERRAL.v1",
            },
        )

        with pytest.raises(ConflictError) as exc_info:
            await entities.handle(CTX_A, "DELETE", {"entity_id": b["entity_id"]})
        error = exc_info.value
        assert error.code == ENTITY_HAS_DEPENDENCIES
        assert error.context["dependencies"]["relationships"] == 1


class TestDynamicData:
    """Tests for the batch writer."""

    @pytest.mark.asyncio
    async def test_batch_round_trip(self, entities, dynamic):
        """Values come back with the type they were written with."""
        created = await create_customer(entities)
        entity_id = created["entity_id"]

        result = await dynamic.handle(
            CTX_A,
            "BATCH",
            {
                "entity_id": entity_id,
                "smart_code": FIELD_SMART,
                "fields": [
                    {"field_name": "credit_limit", "field_type": "number", "value": 5000},
                    {"field_name": "phone", "field_type": "text", "field_value_text": "555"},
                    {"field_name": "since", "field_type": "date", "value": "2024-03-01"},
                    {"field_name": "prefs", "field_type": "json", "value": {"email": True}},
                ],
            },
        )
        assert result["data"]["count"] == 4

        read = await dynamic.handle(CTX_A, "READ", {"entity_id": entity_id})
        assert read["data"]["values"] == {
            "credit_limit": 5000.0,
            "phone": "555",
            "since": "2024-03-01",
            "prefs": {"email": True},
        }
        by_name = {item["field_name"]: item for item in read["data"]["items"]}
        assert by_name["credit_limit"]["field_type"] == "number"
        assert by_name["credit_limit"]["field_value_number"] == 5000.0
        assert by_name["credit_limit"]["field_value_text"] is None
        assert by_name["credit_limit"]["smart_code"] == FIELD_SMART

    @pytest.mark.asyncio
    async def test_type_mismatch(self, entities, dynamic, store):
        """A number field given a string is rejected and nothing is written."""
        created = await create_customer(entities)
        with pytest.raises(ValidationError) as exc_info:
            await dynamic.handle(
                CTX_A,
                "BATCH",
                {
                    "entity_id": created["entity_id"],
                    "smart_code": FIELD_SMART,
                    "fields": [
                        {"field_name": "phone", "field_type": "text", "value": "555"},
                        {"field_name": "credit_limit", "field_type": "number", "value": "5000"},
                    ],
                },
            )
        assert exc_info.value.code == FIELD_TYPE_VALUE_MISMATCH
        assert (await store.get_stats("org-a"))["dynamic_data"] == 0

    @pytest.mark.asyncio
    async def test_stray_column(self, entities, dynamic):
        created = await create_customer(entities)
        with pytest.raises(ValidationError) as exc_info:
            await dynamic.handle(
                CTX_A,
                "BATCH",
                {
                    "entity_id": created["entity_id"],
                    "smart_code": FIELD_SMART,
                    "fields": [
                        {
                            "field_name": "price",
                            "field_type": "number",
                            "field_value_number": 1,
                            "field_value_text": "one",
                        }
                    ],
                },
            )
        assert exc_info.value.code == FIELD_TYPE_VALUE_MISMATCH

    @pytest.mark.asyncio
    async def test_unknown_type(self, entities, dynamic):
        created = await create_customer(entities)
        with pytest.raises(ValidationError) as exc_info:
            await dynamic.handle(
                CTX_A,
                "BATCH",
                {
                    "entity_id": created["entity_id"],
                    "smart_code": FIELD_SMART,
                    "fields": [{"field_name": "x", "field_type": "money", "value": 1}],
                },
            )
        assert exc_info.value.code == FIELD_TYPE_INVALID

    @pytest.mark.asyncio
    async def test_field_smart_code_required(self, entities, dynamic):
        created = await create_customer(entities)
        with pytest.raises(ValidationError) as exc_info:
            await dynamic.handle(
                CTX_A,
                "BATCH",
                {
                    "entity_id": created["entity_id"],
                    "fields": [{"field_name": "x", "field_type": "text", "value": "y"}],
                },
            )
        assert exc_info.value.code == SMART_CODE_INVALID

    @pytest.mark.asyncio
    async def test_batch_other_org_entity(self, entities, dynamic):
        created = await create_customer(entities)
        with pytest.raises(NotFoundError) as exc_info:
            await dynamic.handle(
                CTX_B,
                "BATCH",
                {
                    "entity_id": created["entity_id"],
                    "smart_code": FIELD_SMART,
                    "fields": {"phone": {"field_type": "text", "value": "555"}},
                },
            )
        assert exc_info.value.code == ENTITY_NOT_FOUND

    @pytest.mark.asyncio
    async def test_delete_field(self, entities, dynamic):
        created = await create_customer(
            entities, dynamic={"phone": {"field_type": "text", "value": "555"}}
        )
        payload = {"entity_id": created["entity_id"], "field_name": "phone"}

        result = await dynamic.handle(CTX_A, "DELETE", payload)
        assert result["deleted"] is True
        with pytest.raises(NotFoundError) as exc_info:
            await dynamic.handle(CTX_A, "DELETE", payload)
        assert exc_info.value.code == FIELD_NOT_FOUND
