import pytest

from kiro_memory.embeddings.service import build_embedding_text
from kiro_memory.services.consolidation import ConsolidationService, canonical_files, consolidated_title
from kiro_memory.vector_store import deserialize_f32, serialize_f32


async def _add(db, title, text, files, project="acme", obs_type="command", created_at_epoch=None):
    return await db.add_observation(
        "mem", project, obs_type, title, text=text, files_modified=files, created_at_epoch=created_at_epoch
    )


@pytest.fixture
def service(db, test_config):
    return ConsolidationService(db, test_config)


def test_canonical_files_ignores_order_and_duplicates():
    assert canonical_files("b.py, a.py, b.py") == canonical_files("a.py,b.py")
    assert canonical_files(" ") == ""
    assert canonical_files(None) == ""


def test_consolidated_title_replaces_previous_suffix():
    assert consolidated_title("Build", 5) == "Build (consolidated x5)"
    assert consolidated_title("Build (consolidated x3)", 6) == "Build (consolidated x6)"


@pytest.mark.asyncio
async def test_five_observations_merge_into_newest(db, service):
    ids = [
        await _add(db, "Run build", f"attempt {i}", "build.sh", created_at_epoch=1_000 + i)
        for i in range(5)
    ]

    report = await service.consolidate(project="acme", min_group_size=3)
    assert report.merged == 1
    assert report.removed == 4
    assert report.failed == 0

    remaining = await db.list_observations(project="acme")
    assert [o.id for o in remaining] == [ids[-1]]
    keeper = remaining[0]
    assert keeper.title == "Run build (consolidated x5)"
    assert keeper.text.startswith("attempt 4")
    for i in range(4):
        assert f"attempt {i}" in keeper.text
    assert keeper.text.count("\n---\n") == 4


@pytest.mark.asyncio
async def test_groups_below_minimum_are_left_alone(db, service):
    await _add(db, "a", "x", "one.py")
    await _add(db, "b", "y", "one.py")
    await _add(db, "c", "z", "two.py")

    report = await service.consolidate(min_group_size=3)
    assert report.merged == 0
    assert await db.count_rows("observations") == 3


@pytest.mark.asyncio
async def test_grouping_uses_project_type_and_file_set(db, service):
    await _add(db, "a", "1", "x.py, y.py")
    await _add(db, "b", "2", "y.py,x.py")
    await _add(db, "c", "3", "x.py , y.py")
    await _add(db, "d", "4", "x.py, y.py", obs_type="research")
    await _add(db, "e", "5", "x.py, y.py", project="globex")

    report = await service.consolidate()
    assert report.merged == 1
    assert report.removed == 2
    assert await db.count_rows("observations") == 3


@pytest.mark.asyncio
async def test_duplicate_bodies_are_merged_once(db, service):
    for i in range(3):
        await _add(db, "same", "identical body", "f.py", created_at_epoch=1_000 + i)

    await service.consolidate()
    keeper = (await db.list_observations())[0]
    assert keeper.text == "identical body"


@pytest.mark.asyncio
async def test_merged_text_is_capped(db, test_config):
    test_config.maintenance.max_merged_chars = 50
    service = ConsolidationService(db, test_config)
    for i in range(3):
        await _add(db, "big", f"{i}" * 40, "f.py", created_at_epoch=1_000 + i)

    await service.consolidate()
    keeper = (await db.list_observations())[0]
    assert len(keeper.text) == 50


@pytest.mark.asyncio
async def test_dry_run_changes_nothing(db, service):
    for i in range(4):
        await _add(db, "dry", f"v{i}", "f.py", created_at_epoch=1_000 + i)

    report = await service.consolidate(dry_run=True)
    assert report.dry_run is True
    assert report.merged == 1
    assert report.removed == 3
    assert report.groups[0]["files"] == "f.py"
    assert await db.count_rows("observations") == 4


@pytest.mark.asyncio
async def test_failed_group_is_isolated(db, service):
    for i in range(3):
        await _add(db, "good", f"g{i}", "good.py", created_at_epoch=1_000 + i)
    bad_ids = [await _add(db, "bad", f"b{i}", "bad.py", created_at_epoch=2_000 + i) for i in range(3)]

    original = db.delete_observations

    async def _fail_for_bad(ids):
        if set(ids) & set(bad_ids):
            raise RuntimeError("disk full")
        return await original(ids)

    db.delete_observations = _fail_for_bad
    report = await service.consolidate()

    assert report.merged == 1
    assert report.failed == 1
    # The failing group was rolled back as a unit
    for obs_id in bad_ids:
        obs = await db.get_observation(obs_id)
        assert obs is not None
        assert "consolidated" not in obs.title


@pytest.mark.asyncio
async def test_consolidation_drops_merged_embeddings(manager):
    for i in range(3):
        await manager.create_observation(
            "acme", "command", "Run tests", content=f"pass {i}", files=["tests.sh"],
            created_at_epoch=1_000 + i,
        )
    await manager.wait_for_background()
    assert (await manager.embedding_stats()).embedded == 3

    report = await manager.consolidate(project="acme")
    assert report.removed == 2
    await manager.wait_for_background()
    stats = await manager.embedding_stats()
    assert stats.total == 1
    assert stats.embedded == 1

    keeper = await manager.get_observation(report.groups[0]["keeper_id"])
    expected = await manager.embedding_service.embed(
        build_embedding_text(keeper.title, keeper.text, keeper.narrative, keeper.concepts)
    )
    row = await manager.db.fetchone(
        "SELECT embedding FROM observation_embeddings WHERE observation_id = ?", (keeper.id,)
    )
    assert deserialize_f32(row["embedding"]).tolist() == pytest.approx(expected)


@pytest.mark.asyncio
async def test_merge_removes_keeper_vector_atomically(db, service):
    ids = [await _add(db, "lint", f"run {i}", "lint.sh", created_at_epoch=1_000 + i) for i in range(3)]
    async with db.transaction() as conn:
        await conn.execute(
            "INSERT INTO observation_embeddings (observation_id, embedding, model, dimensions, created_at) "
            "VALUES (?, ?, 'fake', 2, 'now')",
            (ids[-1], serialize_f32([1.0, 0.0])),
        )

    await service.consolidate()
    assert await db.fetchone("SELECT 1 FROM observation_embeddings WHERE observation_id = ?", (ids[-1],)) is None
