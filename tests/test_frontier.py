"""
Tests for the shared URL frontier: dequeue protocol, termination and snapshots.
"""

import asyncio

from site_audit.crawler.url_frontier import URLFrontier


async def test_dequeue_increments_processed_count():
    frontier = URLFrontier(frontier=['https://example.com/', 'https://example.com/a'])

    first = await frontier.get_next_url()
    second = await frontier.get_next_url()

    assert (first.url, first.sequence) == ('https://example.com/', 1)
    assert (second.url, second.sequence) == ('https://example.com/a', 2)
    assert frontier.processed_count == 2
    assert frontier.active == 2


async def test_add_url_skips_known_urls():
    frontier = URLFrontier(frontier=['https://example.com/'])

    assert not await frontier.add_url('https://example.com/')
    task = await frontier.get_next_url()
    assert frontier.mark_visited(task.url)
    assert not frontier.mark_visited(task.url)
    assert not await frontier.add_url(task.url)
    assert await frontier.add_urls(['https://example.com/a', 'https://example.com/a', 'https://example.com/b']) == 2


async def test_waiting_worker_picks_up_urls_from_active_worker():
    frontier = URLFrontier(frontier=['https://example.com/'])
    processed = []

    async def worker(discover):
        while True:
            task = await frontier.get_next_url()
            if task is None:
                return
            frontier.mark_visited(task.url)
            processed.append(task.url)
            await asyncio.sleep(0.01)
            if task.url in discover:
                await frontier.add_urls(discover[task.url])
            await frontier.task_done(task.url)

    links = {
        'https://example.com/': ['https://example.com/a', 'https://example.com/b'],
        'https://example.com/a': ['https://example.com/c', 'https://example.com/'],
    }
    await asyncio.wait_for(asyncio.gather(worker(links), worker(links), worker(links)), timeout=5)

    assert sorted(processed) == sorted([
        'https://example.com/', 'https://example.com/a', 'https://example.com/b', 'https://example.com/c'
    ])
    assert frontier.remaining == 0
    assert frontier.active == 0
    assert not frontier.limit_reached


async def test_empty_frontier_with_no_active_workers_terminates():
    frontier = URLFrontier()

    assert await asyncio.wait_for(frontier.get_next_url(), timeout=1) is None


async def test_page_limit_blocks_new_dequeues():
    urls = [f'https://example.com/{i}' for i in range(5)]
    frontier = URLFrontier(max_pages=2, frontier=urls)

    assert await frontier.get_next_url() is not None
    assert await frontier.get_next_url() is not None
    assert await frontier.get_next_url() is None

    assert frontier.limit_reached
    assert frontier.processed_count == 2
    assert frontier.remaining == 3


async def test_page_limit_counts_restored_progress():
    frontier = URLFrontier(max_pages=3, frontier=['https://example.com/c'], processed_count=3)

    assert await frontier.get_next_url() is None
    assert frontier.remaining == 1


async def test_close_wakes_waiting_workers():
    frontier = URLFrontier(frontier=['https://example.com/'])
    task = await frontier.get_next_url()

    waiter = asyncio.create_task(frontier.get_next_url())
    await asyncio.sleep(0.01)
    assert not waiter.done()

    await frontier.close()
    assert await asyncio.wait_for(waiter, timeout=1) is None
    await frontier.task_done(task.url)


async def test_closed_frontier_keeps_links_from_in_flight_pages():
    frontier = URLFrontier(frontier=['https://example.com/'])
    task = await frontier.get_next_url()
    frontier.mark_visited(task.url)

    await frontier.close()
    assert await frontier.add_urls(['https://example.com/child']) == 1
    await frontier.task_done(task.url)

    assert await frontier.get_next_url() is None
    snapshot = frontier.snapshot()
    assert snapshot['frontier'] == ['https://example.com/child']
    assert snapshot['visited'] == ['https://example.com/']


async def test_snapshot_returns_in_flight_urls_to_frontier():
    frontier = URLFrontier(frontier=['https://example.com/', 'https://example.com/a'])

    done = await frontier.get_next_url()
    frontier.mark_visited(done.url)
    await frontier.task_done(done.url)

    in_flight = await frontier.get_next_url()
    frontier.mark_visited(in_flight.url)
    await frontier.add_url('https://example.com/b')

    snapshot = frontier.snapshot()

    assert snapshot['visited'] == ['https://example.com/']
    assert snapshot['frontier'] == ['https://example.com/b', 'https://example.com/a']
    assert snapshot['processed_count'] == 1

    restored = URLFrontier(frontier=snapshot['frontier'], visited=snapshot['visited'],
                           processed_count=snapshot['processed_count'])
    assert not set(restored.pending) & restored.visited
    assert set(restored.pending) | restored.visited == {
        'https://example.com/', 'https://example.com/a', 'https://example.com/b'
    }
