"""Behaviour of the ordered list engine."""

from __future__ import annotations

import asyncio
import random

import pytest

from mediamesh.errors import Conflict, InvalidState, NotFound, PermissionDenied
from mediamesh.models import ChangeKind, SmartCriteria
from mediamesh.repositories import CatalogRepository


def _positions(container) -> list[tuple[int, int]]:
    return [(entry.item_id, entry.position) for entry in container.list_data.items]


def test_add_remove_reorder_keeps_positions_contiguous(make_stack) -> None:
    """Adding three items, removing the middle one and reordering the rest."""

    async def runner() -> None:
        stack = await make_stack()
        engine = stack.services.lists
        first, second, third = await stack.seed_movies(3)
        playlist = await engine.create(1, "Weekend", "Things to watch")

        for item_id in (first, second, third):
            playlist = await engine.add_item(playlist.id, item_id, 1)
        assert _positions(playlist) == [(first, 0), (second, 1), (third, 2)]

        playlist = await engine.remove_item(playlist.id, second, 1)
        assert _positions(playlist) == [(first, 0), (third, 1)]
        assert playlist.list_data.item_count == 2

        playlist = await engine.reorder(playlist.id, [third, first], 1)
        assert _positions(playlist) == [(third, 0), (first, 1)]

        stored = await engine.get(playlist.id, 1)
        assert _positions(stored) == [(third, 0), (first, 1)]
        assert stored.list_data.validate_items() == []

        await stack.close()

    asyncio.run(runner())


def test_create_requires_title(make_stack) -> None:
    async def runner() -> None:
        stack = await make_stack()
        with pytest.raises(InvalidState, match="title is required"):
            await stack.services.lists.create(1, "   ")
        await stack.close()

    asyncio.run(runner())


def test_add_rejects_duplicates_and_unknown_items(make_stack) -> None:
    async def runner() -> None:
        stack = await make_stack()
        engine = stack.services.lists
        (movie,) = await stack.seed_movies(1)
        playlist = await engine.create(1, "Favourites")
        playlist = await engine.add_item(playlist.id, movie, 1)

        with pytest.raises(InvalidState, match="already in this list"):
            await engine.add_item(playlist.id, movie, 1)
        with pytest.raises(NotFound):
            await engine.add_item(playlist.id, 999_999, 1)
        with pytest.raises(InvalidState, match="cannot contain itself"):
            await engine.add_item(playlist.id, playlist.id, 1)

        stored = await engine.get(playlist.id, 1)
        assert stored.list_data.item_ids() == [movie]
        assert stored.version == playlist.version

        await stack.close()

    asyncio.run(runner())


def test_remove_missing_item_is_not_found(make_stack) -> None:
    async def runner() -> None:
        stack = await make_stack()
        engine = stack.services.lists
        playlist = await engine.create(1, "Empty")
        with pytest.raises(NotFound, match="not found in this list"):
            await engine.remove_item(playlist.id, 42, 1)
        with pytest.raises(NotFound):
            await engine.add_item(123_456, 1, 1)
        await stack.close()

    asyncio.run(runner())


def test_remove_at_position_guards_against_stale_callers(make_stack) -> None:
    async def runner() -> None:
        stack = await make_stack()
        engine = stack.services.lists
        first, second = await stack.seed_movies(2)
        playlist = await engine.create(1, "Queue")
        await engine.add_item(playlist.id, first, 1)
        await engine.add_item(playlist.id, second, 1)

        with pytest.raises(InvalidState, match="Position mismatch"):
            await engine.remove_item_at_position(playlist.id, second, 0, 1)

        playlist = await engine.remove_item_at_position(playlist.id, second, 1, 1)
        assert _positions(playlist) == [(first, 0)]

        await stack.close()

    asyncio.run(runner())


@pytest.mark.parametrize(
    "build_order",
    [
        lambda ids: ids[:2],
        lambda ids: ids + [ids[0]],
        lambda ids: [ids[0], ids[0], ids[1]],
        lambda ids: ids[:2] + [987_654],
    ],
    ids=["dropped", "duplicated-extra", "duplicate", "foreign"],
)
def test_reorder_rejects_non_permutations(make_stack, build_order) -> None:
    async def runner() -> None:
        stack = await make_stack()
        engine = stack.services.lists
        ids = await stack.seed_movies(3)
        playlist = await engine.create(1, "Strict")
        for item_id in ids:
            playlist = await engine.add_item(playlist.id, item_id, 1)

        with pytest.raises(InvalidState, match="Reorder set mismatch"):
            await engine.reorder(playlist.id, build_order(ids), 1)

        stored = await engine.get(playlist.id, 1)
        assert _positions(stored) == _positions(playlist)
        assert stored.version == playlist.version

        await stack.close()

    asyncio.run(runner())


def test_reorder_journals_one_record_per_entry(make_stack) -> None:
    async def runner() -> None:
        stack = await make_stack()
        engine = stack.services.lists
        ids = await stack.seed_movies(3)
        playlist = await engine.create(1, "Journal")
        for item_id in ids:
            await engine.add_item(playlist.id, item_id, 1)

        await engine.reorder(playlist.id, list(reversed(ids)), 1)
        history = await engine.history(playlist.id, 1)
        reorders = [record for record in history if record.change_type == ChangeKind.REORDER]
        assert [record.item_id for record in reorders] == list(reversed(ids))
        assert all(record.actor_id == 1 for record in history)

        await stack.close()

    asyncio.run(runner())


def test_remove_then_add_appends_fresh_history(make_stack) -> None:
    async def runner() -> None:
        stack = await make_stack()
        engine = stack.services.lists
        (movie,) = await stack.seed_movies(1)
        playlist = await engine.create(1, "Churn")

        await engine.add_item(playlist.id, movie, 1)
        await engine.remove_item(playlist.id, movie, 1)
        await engine.add_item(playlist.id, movie, 1)

        history = await engine.history(playlist.id, 1, item_id=movie)
        assert [record.change_type for record in history] == [
            ChangeKind.ADD,
            ChangeKind.REMOVE,
            ChangeKind.ADD,
        ]
        timestamps = [record.timestamp for record in history]
        assert timestamps == sorted(timestamps)

        await stack.close()

    asyncio.run(runner())


def test_replace_all_recomputes_membership(make_stack) -> None:
    async def runner() -> None:
        stack = await make_stack()
        engine = stack.services.lists
        first, second, third, fourth = await stack.seed_movies(4)
        playlist = await engine.create(1, "Bulk")
        for item_id in (first, second, third):
            await engine.add_item(playlist.id, item_id, 1)

        playlist = await engine.replace_all(playlist.id, [fourth, second, fourth], 1)
        assert _positions(playlist) == [(fourth, 0), (second, 1)]
        assert playlist.list_data.item_count == 2

        history = await engine.history(playlist.id, 1)
        tail = {(record.item_id, record.change_type) for record in history[-4:]}
        assert tail == {
            (fourth, ChangeKind.ADD),
            (second, ChangeKind.UPDATE),
            (first, ChangeKind.REMOVE),
            (third, ChangeKind.REMOVE),
        }

        with pytest.raises(NotFound, match="Items not found"):
            await engine.replace_all(playlist.id, [first, 55_555], 1)
        stored = await engine.get(playlist.id, 1)
        assert stored.list_data.item_ids() == [fourth, second]

        await stack.close()

    asyncio.run(runner())


def test_update_preserves_entries_and_bumps_version(make_stack) -> None:
    async def runner() -> None:
        stack = await make_stack()
        engine = stack.services.lists
        ids = await stack.seed_movies(2)
        playlist = await engine.create(1, "Before")
        for item_id in ids:
            playlist = await engine.add_item(playlist.id, item_id, 1)

        updated = await engine.update(
            playlist.id, 1, title="After", description="Renamed", is_public=True
        )
        assert updated.title == "After"
        assert updated.list_data.description == "Renamed"
        assert updated.list_data.is_public is True
        assert updated.list_data.item_ids() == ids
        assert updated.version == playlist.version + 1

        with pytest.raises(InvalidState, match="title is required"):
            await engine.update(playlist.id, 1, title="")
        with pytest.raises(InvalidState, match="Not a smart list"):
            await engine.update(playlist.id, 1, smart_criteria=SmartCriteria())

        await stack.close()

    asyncio.run(runner())


def test_random_operation_sequences_keep_invariants(make_stack) -> None:
    """Positions stay 0..n-1 and the count matches after any edit sequence."""

    async def runner() -> None:
        stack = await make_stack()
        engine = stack.services.lists
        pool = await stack.seed_movies(8)
        playlist = await engine.create(1, "Chaos")
        rng = random.Random(1234)

        for _ in range(40):
            current = playlist.list_data.item_ids()
            operation = rng.choice(["add", "remove", "reorder", "replace"])
            if operation == "add":
                candidates = [item_id for item_id in pool if item_id not in current]
                if not candidates:
                    continue
                playlist = await engine.add_item(playlist.id, rng.choice(candidates), 1)
            elif operation == "remove":
                if not current:
                    continue
                playlist = await engine.remove_item(playlist.id, rng.choice(current), 1)
            elif operation == "reorder":
                shuffled = current[:]
                rng.shuffle(shuffled)
                playlist = await engine.reorder(playlist.id, shuffled, 1)
                assert playlist.list_data.item_ids() == shuffled
            else:
                subset = rng.sample(pool, rng.randint(0, len(pool)))
                playlist = await engine.replace_all(playlist.id, subset, 1)

            data = playlist.list_data
            assert [entry.position for entry in data.items] == list(range(len(data.items)))
            assert data.item_count == len(data.items)
            assert len(set(data.item_ids())) == len(data.items)

        stored = await engine.get(playlist.id, 1)
        assert await engine.validate(playlist.id, 1) == []
        assert stored.list_data.item_ids() == playlist.list_data.item_ids()

        await stack.close()

    asyncio.run(runner())


def test_stale_version_write_is_rejected(make_stack) -> None:
    async def runner() -> None:
        stack = await make_stack()
        engine = stack.services.lists
        (movie,) = await stack.seed_movies(1)
        playlist = await engine.create(1, "Contended")

        async with stack.database.session_factory() as session:
            repository = CatalogRepository(session)
            stale = await repository.get(playlist.id)
            assert stale is not None

            # Another writer commits in between.
            await engine.add_item(playlist.id, movie, 1)

            stale.title = "Clobbered"
            with pytest.raises(Conflict, match="Stale list state"):
                await repository.update(stale, expected_version=stale.version)
            await session.rollback()

        stored = await engine.get(playlist.id, 1)
        assert stored.title == "Contended"
        assert stored.list_data.item_ids() == [movie]

        await stack.close()

    asyncio.run(runner())


def test_concurrent_adds_are_serialised(make_stack) -> None:
    async def runner() -> None:
        stack = await make_stack()
        engine = stack.services.lists
        ids = await stack.seed_movies(5)
        playlist = await engine.create(1, "Parallel")

        await asyncio.gather(*(engine.add_item(playlist.id, item_id, 1) for item_id in ids))

        stored = await engine.get(playlist.id, 1)
        assert sorted(stored.list_data.item_ids()) == sorted(ids)
        assert [entry.position for entry in stored.list_data.items] == list(range(5))
        assert stored.version == playlist.version + 5
        assert engine._locks == {}

        await stack.close()

    asyncio.run(runner())


def test_delete_is_owner_only_and_keeps_ledger(make_stack) -> None:
    async def runner() -> None:
        stack = await make_stack()
        engine = stack.services.lists
        (movie,) = await stack.seed_movies(1)
        playlist = await engine.create(1, "Doomed")
        await engine.add_item(playlist.id, movie, 1)
        await stack.services.guard.share_with(1, playlist.id, 2, "write")

        with pytest.raises(PermissionDenied):
            await engine.delete(playlist.id, 2)

        await engine.delete(playlist.id, 1)
        with pytest.raises(NotFound):
            await engine.get(playlist.id, 1)
        assert await engine.lists_for_owner(1) == []

        history = await stack.services.ledger.history(playlist.id)
        assert [record.change_type for record in history] == [ChangeKind.ADD]

        await stack.close()

    asyncio.run(runner())


def test_entries_are_paged(make_stack) -> None:
    async def runner() -> None:
        stack = await make_stack(LIST_PAGE_SIZE_MAX=2)
        engine = stack.services.lists
        ids = await stack.seed_movies(5)
        playlist = await engine.create(1, "Paged", kind="collection")
        playlist = await engine.replace_all(playlist.id, ids, 1)
        assert playlist.content_type == "collection"

        second_page = await engine.entries(playlist.id, 1, page=1, size=10)
        assert [entry.item_id for entry in second_page] == ids[2:4]
        assert await engine.entries(playlist.id, 1, page=9) == []

        await stack.close()

    asyncio.run(runner())


def test_nested_list_requires_read_access(make_stack) -> None:
    async def runner() -> None:
        stack = await make_stack()
        engine = stack.services.lists
        (movie,) = await stack.seed_movies(1)
        outer = await engine.create(1, "Outer")
        private = await engine.create(2, "Private")
        shared = await engine.create(2, "Shared")
        await stack.services.guard.share_with(2, shared.id, 1, "read")

        with pytest.raises(PermissionDenied):
            await engine.add_item(outer.id, private.id, 1)
        with pytest.raises(PermissionDenied):
            await engine.replace_all(outer.id, [movie, private.id], 1)
        assert (await engine.get(outer.id, 1)).list_data.item_ids() == []

        outer = await engine.add_item(outer.id, shared.id, 1)
        outer = await engine.add_item(outer.id, movie, 1)
        assert outer.list_data.item_ids() == [shared.id, movie]

        await stack.close()

    asyncio.run(runner())


def test_deleting_a_nested_list_strips_it_from_parents(make_stack) -> None:
    async def runner() -> None:
        stack = await make_stack()
        engine = stack.services.lists
        first, second = await stack.seed_movies(2)
        inner = await engine.create(2, "Inner")
        await stack.services.guard.share_with(2, inner.id, 1, "read")
        outer = await engine.create(1, "Outer")
        outer = await engine.replace_all(outer.id, [first, inner.id, second], 1)

        await engine.delete(inner.id, 2)

        stored = await engine.get(outer.id, 1)
        assert _positions(stored) == [(first, 0), (second, 1)]
        assert stored.list_data.item_count == 2
        assert stored.list_data.modified_by == 2
        assert stored.version == outer.version + 1

        history = await engine.history(outer.id, 1, item_id=inner.id)
        assert [(record.change_type, record.actor_id) for record in history] == [
            (ChangeKind.ADD, 1),
            (ChangeKind.REMOVE, 2),
        ]

        replaced = await engine.replace_all(outer.id, stored.list_data.item_ids(), 1)
        assert _positions(replaced) == [(first, 0), (second, 1)]
        assert engine._locks == {}

        await stack.close()

    asyncio.run(runner())


def test_failed_mutations_release_their_lock(make_stack) -> None:
    async def runner() -> None:
        stack = await make_stack()
        engine = stack.services.lists
        playlist = await engine.create(1, "Locks")

        with pytest.raises(NotFound):
            await engine.add_item(playlist.id, 987654, 1)
        with pytest.raises(NotFound):
            await engine.remove_item(404404, 1, 1)
        await engine.delete(playlist.id, 1)

        assert engine._locks == {}

        await stack.close()

    asyncio.run(runner())
