import pytest

from main import AggregatorCLI, build_parser, window_from_args
from models import DatabaseQueue


def test_pause_and_resume_parse():
    parser = build_parser()

    args = parser.parse_args(['pause', '--user', 'u1', 'src-1'])
    assert (args.command, args.user, args.source_id) == ('pause', 'u1', 'src-1')

    args = parser.parse_args(['--db', 'x.db', 'resume', '--user', 'u1', 'src-1'])
    assert (args.command, args.db) == ('resume', 'x.db')


def test_sync_window_flags():
    parser = build_parser()

    assert window_from_args(parser.parse_args(['sync', '--user', 'u1', '--full'])).hours is None
    assert window_from_args(parser.parse_args(['sync', '--user', 'u1', '--hours', '2'])).hours == 2


@pytest.mark.asyncio
async def test_pause_and_resume_a_subscription(tmp_path, capsys):
    db_path = str(tmp_path / "cli.db")
    cli = AggregatorCLI(db_path)

    assert await cli.subscribe("u1", "https://blog.example.com/feed.xml") == 0
    queue = DatabaseQueue(db_path)
    await queue.start()
    source = await queue.execute('get_source_by_url', url="https://blog.example.com/feed.xml")
    await queue.stop()

    assert await cli.pause("u1", source.id) == 0
    assert await cli.pause("u2", source.id) == 1

    queue = DatabaseQueue(db_path)
    await queue.start()
    paused = await queue.execute('get_sources_for_user', user_id="u1")
    await queue.stop()
    assert paused == []

    assert await cli.pause("u1", source.id, paused=False) == 0
    out = capsys.readouterr().out
    assert "Paused" in out and "Resumed" in out
