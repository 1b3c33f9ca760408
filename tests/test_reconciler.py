import time

import pytest

from entities import ContentType, FeedEntry, MediaInfo
from reconciler import Reconciler, SyncWindow, select_entries

HOUR = 3600


def make_entry(n, published_at=None, **overrides):
    fields = dict(
        title=f"Post {n}",
        url=f"https://example.com/posts/{n}",
        content=f"<p>Body {n}</p>",
        text_content=f"Body {n}",
        excerpt=f"Body {n}",
        published_at=published_at,
        media=MediaInfo(image_url=f"https://example.com/img/{n}.jpg"),
        word_count=2,
        reading_time=1,
    )
    fields.update(overrides)
    return FeedEntry(**fields)


async def make_source(db, url="https://example.com/feed.xml"):
    return await db.execute('create_source', url=url, source_type='feed', title="Example")


def test_window_contains():
    now = 1_700_000_000
    window = SyncWindow.recent(24)
    assert window.contains(now - HOUR, now)
    assert not window.contains(now - 25 * HOUR, now)
    assert window.contains(None, now)
    assert SyncWindow.full().contains(0, now)


def test_recent_window_must_be_positive():
    with pytest.raises(ValueError):
        SyncWindow.recent(0)


def test_select_entries_orders_newest_first_with_undated_last():
    now = 1_700_000_000
    entries = [
        make_entry(1, now - 3 * HOUR),
        make_entry(2, None),
        make_entry(3, now - HOUR),
        make_entry(1, now - 2 * HOUR),  # repeated URL, first occurrence wins
        make_entry(4, now - 48 * HOUR),
    ]

    selected = select_entries(entries, SyncWindow.recent(24), now=now)

    assert [e.title for e in selected] == ["Post 3", "Post 1", "Post 2"]
    assert selected[1].published_at == now - 3 * HOUR


def test_select_entries_limit():
    now = 1_700_000_000
    entries = [make_entry(i, now - i * HOUR) for i in range(1, 40)]

    selected = select_entries(entries, SyncWindow.full(), limit=25, now=now)

    assert len(selected) == 25
    assert selected[0].title == "Post 1"


@pytest.mark.asyncio
async def test_reconcile_is_idempotent(db):
    source = await make_source(db)
    reconciler = Reconciler(db)
    now = int(time.time())
    entries = [make_entry(1, now - HOUR), make_entry(2, now - 2 * HOUR)]

    first = await reconciler.reconcile(source.id, entries, SyncWindow.full())
    second = await reconciler.reconcile(source.id, entries, SyncWindow.full())

    assert (first.added, first.updated) == (2, 0)
    assert (second.added, second.updated) == (0, 2)
    assert await db.execute('count_entries', source_id=source.id) == 2


@pytest.mark.asyncio
async def test_reconcile_overwrites_with_latest_values(db):
    source = await make_source(db)
    reconciler = Reconciler(db)

    await reconciler.reconcile(source.id, [make_entry(1, author="Jane")], SyncWindow.full())
    original = await db.execute('get_entry_by_url', source_id=source.id, url="https://example.com/posts/1")

    await reconciler.reconcile(
        source.id, [make_entry(1, title="Post 1 (edited)", author=None)], SyncWindow.full()
    )
    updated = await db.execute('get_entry_by_url', source_id=source.id, url="https://example.com/posts/1")

    assert updated.id == original.id
    assert updated.created_at == original.created_at
    assert updated.title == "Post 1 (edited)"
    assert updated.author is None


@pytest.mark.asyncio
async def test_undated_entries_are_stored_with_null_date(db):
    source = await make_source(db)

    result = await Reconciler(db).reconcile(source.id, [make_entry(1, None)], SyncWindow.recent(24))
    stored = await db.execute('get_entry_by_url', source_id=source.id, url="https://example.com/posts/1")

    assert result.added == 1
    assert stored.published_at is None


@pytest.mark.asyncio
async def test_entries_outside_window_are_ignored(db):
    source = await make_source(db)
    now = int(time.time())
    entries = [make_entry(1, now - HOUR), make_entry(2, now - 72 * HOUR)]

    result = await Reconciler(db).reconcile(source.id, entries, SyncWindow.recent(24))

    assert (result.added, result.updated, result.skipped) == (1, 0, 1)
    assert await db.execute('get_entry_by_url', source_id=source.id, url="https://example.com/posts/2") is None


@pytest.mark.asyncio
async def test_same_url_in_two_sources_is_two_entries(db):
    first = await make_source(db, "https://a.example.com/feed")
    second = await make_source(db, "https://b.example.com/feed")
    entry = make_entry(1)

    await Reconciler(db).reconcile(first.id, [entry], SyncWindow.full())
    await Reconciler(db).reconcile(second.id, [entry], SyncWindow.full())

    assert await db.execute('count_entries') == 2


@pytest.mark.asyncio
async def test_content_type_tag_is_kept(db):
    source = await db.execute('create_source', url="https://cast.example.com/rss", source_type='podcast', title="Cast")

    await Reconciler(db).reconcile(source.id, [make_entry(1)], SyncWindow.full(), content_type=ContentType.PODCAST)
    stored = await db.execute('get_entry_by_url', source_id=source.id, url="https://example.com/posts/1")
    looked_up = await db.execute('get_content', entry_id=stored.id)

    assert looked_up.content_type == ContentType.PODCAST
    assert looked_up.image_url == "https://example.com/img/1.jpg"
