import pytest

from mcp_mailbox.addressing import GlobalScope, ProjectScope, resolve_scope
from mcp_mailbox.context import (
    count_context_entries,
    delete_context,
    get_context,
    get_context_entry,
    list_context_keys,
    set_context,
)
from mcp_mailbox.errors import NotFoundError

GLOBAL = GlobalScope()
PROJECT = ProjectScope("a/b")


class TestContextStore:
    @pytest.mark.asyncio
    async def test_set_then_get(self, isolated_env):
        await set_context(GLOBAL, "k", "v")
        assert await get_context(GLOBAL, "k") == "v"

    @pytest.mark.asyncio
    async def test_overwrite_keeps_one_entry(self, isolated_env):
        await set_context(GLOBAL, "k", "v1")
        await set_context(GLOBAL, "k", "v2")
        assert await get_context(GLOBAL, "k") == "v2"
        assert await list_context_keys(GLOBAL) == ["k"]
        assert await count_context_entries() == 1

    @pytest.mark.asyncio
    async def test_missing_key(self, isolated_env):
        with pytest.raises(NotFoundError) as excinfo:
            await get_context(GLOBAL, "nope")
        assert "global" in str(excinfo.value)

    @pytest.mark.asyncio
    async def test_delete_then_get(self, isolated_env):
        await set_context(PROJECT, "k", "v")
        await delete_context(PROJECT, "k")
        with pytest.raises(NotFoundError):
            await get_context(PROJECT, "k")
        with pytest.raises(NotFoundError):
            await delete_context(PROJECT, "k")

    @pytest.mark.asyncio
    async def test_value_stored_verbatim(self, isolated_env):
        value = '{"nested": [1, 2]}\n  ünïcødé \U0001f4e6 '
        await set_context(PROJECT, "blob", value)
        assert await get_context(PROJECT, "blob") == value

    @pytest.mark.asyncio
    async def test_entry_records_project(self, isolated_env):
        await set_context(PROJECT, "k", "v")
        entry = await get_context_entry(PROJECT, "k")
        assert entry.project_id == "a/b"
        assert entry.namespace == "project:a/b"
        await set_context(GLOBAL, "k", "g")
        assert (await get_context_entry(GLOBAL, "k")).project_id is None


class TestScoping:
    @pytest.mark.asyncio
    async def test_global_and_project_do_not_collide(self, isolated_env):
        await set_context(GLOBAL, "k", "global-value")
        await set_context(PROJECT, "k", "project-value")
        assert await get_context(GLOBAL, "k") == "global-value"
        assert await get_context(PROJECT, "k") == "project-value"

    @pytest.mark.asyncio
    async def test_project_named_global(self, isolated_env):
        await set_context(GLOBAL, "k", "g")
        await set_context(resolve_scope("global"), "k", "p")
        assert await get_context(GLOBAL, "k") == "g"
        assert await get_context(resolve_scope("global"), "k") == "p"

    @pytest.mark.asyncio
    async def test_projects_are_isolated(self, isolated_env):
        await set_context(PROJECT, "only-here", "v")
        with pytest.raises(NotFoundError):
            await get_context(ProjectScope("c/d"), "only-here")
        with pytest.raises(NotFoundError):
            await get_context(GLOBAL, "only-here")

    @pytest.mark.asyncio
    async def test_list_is_sorted_and_scoped(self, isolated_env):
        for key in ("zeta", "alpha", "mid"):
            await set_context(PROJECT, key, "v")
        await set_context(GLOBAL, "global-only", "v")
        assert await list_context_keys(PROJECT) == ["alpha", "mid", "zeta"]
        assert await list_context_keys(GLOBAL) == ["global-only"]
        assert await list_context_keys(ProjectScope("empty")) == []
