import sqlite3

import pytest

from models import (
    DatabaseQueue,
    FeedMetadata,
    NEXT_UPDATE_NEVER,
    NEXT_UPDATE_ON_APP_LAUNCH,
    ParsedEntry,
    UpdateMode,
)

NOW = 1_700_000_000


def insert_feed(db, url='https://example.com/feed.xml', update_mode='HOURLY', next_update_time=0, title=None):
    cursor = db.conn.cursor()
    cursor.execute(
        "INSERT INTO feeds (url, update_mode, next_update_time, title) VALUES (?, ?, ?, ?)",
        (url, update_mode, next_update_time, title),
    )
    db.conn.commit()
    feed_id = cursor.lastrowid
    cursor.close()
    return feed_id


def fetch_entries(db, feed_id):
    cursor = db.conn.cursor()
    cursor.execute("SELECT * FROM entries WHERE feed_id = ? ORDER BY id", (feed_id,))
    rows = cursor.fetchall()
    cursor.close()
    return rows


def fetch_feed(db, feed_id):
    cursor = db.conn.cursor()
    cursor.execute("SELECT * FROM feeds WHERE id = ?", (feed_id,))
    row = cursor.fetchone()
    cursor.close()
    return row


@pytest.mark.asyncio
async def test_get_source_maps_row(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        feed_id = insert_feed(db, update_mode='every_2_hours')
        source = await db.execute('get_source', source_id=feed_id)
        assert source.id == feed_id
        assert source.update_mode == UpdateMode.EVERY_2_HOURS
        assert source.next_update_retry == 0
        assert source.http_etag is None

        assert await db.execute('get_source', source_id=9999) is None
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_schema_initialization_is_idempotent(tmp_path):
    db_path = str(tmp_path / "test.db")
    db = DatabaseQueue(db_path)
    await db.start()
    feed_id = insert_feed(db)
    await db.stop()

    reopened = DatabaseQueue(db_path)
    await reopened.start()
    try:
        assert (await reopened.execute('get_source', source_id=feed_id)).id == feed_id
    finally:
        await reopened.stop()


@pytest.mark.asyncio
async def test_upsert_updates_existing_entry_and_keeps_insert_time(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        feed_id = insert_feed(db)
        first = ParsedEntry(uid='a', title='Original', publish_time=NOW - 60)
        assert await db.execute('upsert_entry', source_id=feed_id, entry=first, now=NOW) is True

        revised = ParsedEntry(uid='a', title='Revised', publish_time=NOW - 60)
        assert await db.execute('upsert_entry', source_id=feed_id, entry=revised, now=NOW + 100) is False

        rows = fetch_entries(db, feed_id)
        assert len(rows) == 1
        assert rows[0]['title'] == 'Revised'
        assert rows[0]['insert_time'] == NOW
        assert rows[0]['update_time'] == NOW + 100
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_same_uid_in_different_feeds_are_distinct(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        feed_a = insert_feed(db, url='https://a.example.com/feed')
        feed_b = insert_feed(db, url='https://b.example.com/feed')
        entry = ParsedEntry(uid='shared', title='Same id')
        assert await db.execute('upsert_entry', source_id=feed_a, entry=entry, now=NOW) is True
        assert await db.execute('upsert_entry', source_id=feed_b, entry=entry, now=NOW) is True
        assert len(fetch_entries(db, feed_a)) == 1
        assert len(fetch_entries(db, feed_b)) == 1
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_merge_writes_entries_metadata_and_ledger(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        feed_id = insert_feed(db)
        events = [
            FeedMetadata(title='Example', link='https://example.com/', language='en'),
            ParsedEntry(uid='1', title='One'),
            ParsedEntry(uid='2', title='Two'),
            ParsedEntry(uid='1', title='One again'),
        ]
        ledger = {'last_update_time': NOW, 'next_update_time': NOW + 3600, 'next_update_retry': 0, 'http_etag': '"v1"'}
        counts = await db.execute('merge_feed_content', source_id=feed_id, events=events, ledger_fields=ledger, now=NOW)

        assert counts == {'inserted': 2, 'updated': 1}
        feed = fetch_feed(db, feed_id)
        assert feed['title'] == 'Example'
        assert feed['language'] == 'en'
        assert feed['http_etag'] == '"v1"'
        assert feed['next_update_time'] == NOW + 3600
        assert [row['title'] for row in fetch_entries(db, feed_id)] == ['One again', 'Two']
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_merge_keeps_stored_title_when_feed_has_none(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        feed_id = insert_feed(db, title='Stored title')
        events = [FeedMetadata(title=None, link='https://example.com/')]
        await db.execute('merge_feed_content', source_id=feed_id, events=events, ledger_fields={'last_update_time': NOW}, now=NOW)

        feed = fetch_feed(db, feed_id)
        assert feed['title'] == 'Stored title'
        assert feed['last_update_time'] == NOW
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_merge_without_metadata_still_writes_ledger(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        feed_id = insert_feed(db)
        await db.execute(
            'merge_feed_content',
            source_id=feed_id,
            events=[ParsedEntry(uid='x')],
            ledger_fields={'last_update_time': NOW, 'http_last_modified': 'yesterday'},
            now=NOW,
        )
        feed = fetch_feed(db, feed_id)
        assert feed['last_update_time'] == NOW
        assert feed['http_last_modified'] == 'yesterday'
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_failed_merge_rolls_back_everything(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        feed_id = insert_feed(db, title='Before')
        events = [
            FeedMetadata(title='After'),
            ParsedEntry(uid='good', title='Good'),
            ParsedEntry(uid=None, title='Violates NOT NULL'),
        ]
        with pytest.raises(sqlite3.IntegrityError):
            await db.execute('merge_feed_content', source_id=feed_id, events=events, ledger_fields={'last_update_time': NOW}, now=NOW)

        assert fetch_entries(db, feed_id) == []
        feed = fetch_feed(db, feed_id)
        assert feed['title'] == 'Before'
        assert feed['last_update_time'] == 0

        # The queue keeps serving other operations
        assert await db.execute('upsert_entry', source_id=feed_id, entry=ParsedEntry(uid='later'), now=NOW) is True
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_update_source_is_partial_and_validated(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        feed_id = insert_feed(db, title='Keep me')
        assert await db.execute('update_source', source_id=feed_id, fields={'next_update_retry': 3}) is True

        feed = fetch_feed(db, feed_id)
        assert feed['next_update_retry'] == 3
        assert feed['title'] == 'Keep me'

        with pytest.raises(ValueError):
            await db.execute('update_source', source_id=feed_id, fields={'url': 'https://evil.example.com'})

        assert await db.execute('update_source', source_id=9999, fields={'next_update_retry': 1}) is False
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_outdated_query_honours_sentinels(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        due = insert_feed(db, next_update_time=NOW - 10)
        new = insert_feed(db, next_update_time=0)
        soon = insert_feed(db, next_update_time=NOW + 300)
        later = insert_feed(db, next_update_time=NOW + 7200)
        never = insert_feed(db, update_mode='DISABLED', next_update_time=NEXT_UPDATE_NEVER)
        on_launch = insert_feed(db, update_mode='ON_APP_LAUNCH', next_update_time=NEXT_UPDATE_ON_APP_LAUNCH)

        regular = await db.execute('query_outdated_sources', now=NOW)
        assert {s.id for s in regular} == {due, new}

        launch = await db.execute('query_outdated_sources', now=NOW, app_launch=True, lookahead_seconds=600)
        assert {s.id for s in launch} == {due, new, soon, on_launch}
        assert later not in {s.id for s in launch}
        assert never not in {s.id for s in launch}

        assert await db.execute('get_earliest_next_update_time') == 0
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_earliest_update_ignores_untimed_feeds(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        assert await db.execute('get_earliest_next_update_time') is None
        insert_feed(db, next_update_time=NEXT_UPDATE_NEVER)
        insert_feed(db, next_update_time=NEXT_UPDATE_ON_APP_LAUNCH)
        assert await db.execute('get_earliest_next_update_time') is None
        insert_feed(db, next_update_time=NOW + 60)
        assert await db.execute('get_earliest_next_update_time') == NOW + 60
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_recent_publish_times_and_status(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        feed_id = insert_feed(db, next_update_time=NOW - 1)
        for i in range(5):
            entry = ParsedEntry(uid=str(i), publish_time=NOW - i * 100)
            await db.execute('upsert_entry', source_id=feed_id, entry=entry, now=NOW)
        await db.execute('upsert_entry', source_id=feed_id, entry=ParsedEntry(uid='undated'), now=NOW)

        times = await db.execute('get_recent_publish_times', source_id=feed_id, limit=3)
        assert times == [NOW, NOW - 100, NOW - 200]

        status = await db.execute('get_status_counts', now=NOW)
        assert status == {'feeds': 1, 'entries': 6, 'failing_feeds': 0, 'due_feeds': 1}
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_private_operations_are_not_dispatched(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        with pytest.raises(AttributeError):
            await db.execute('_update_source', cursor=None, source_id=1, fields={})
    finally:
        await db.stop()


def test_unknown_update_mode_falls_back_to_default():
    assert UpdateMode.parse('weekly') == UpdateMode.DEFAULT
    assert UpdateMode.parse(None) == UpdateMode.DEFAULT
    assert UpdateMode.parse(' hourly ') == UpdateMode.HOURLY
