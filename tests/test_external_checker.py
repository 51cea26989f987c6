"""
Tests for the external link verification pool.
"""

from site_audit.crawler.external_checker import CHECK_ERROR, ExternalLinkChecker
from site_audit.crawler.fetcher import FETCH_ERROR


async def test_same_url_is_checked_once_per_source(site, fetcher):
    url = str(site.make_url('/x'))
    checker = ExternalLinkChecker(fetcher, {}, max_parallel_checks=3)

    results = await checker.run([
        (url, 'https://example.com/'),
        (url, 'https://example.com/a'),
        (url, 'https://example.com/'),
    ])

    assert set(results) == {(url, 'https://example.com/'), (url, 'https://example.com/a')}
    assert all(r.status == 200 for r in results.values())
    assert site.app['hits']['/x'] == 4  # probe + one-hop redirect trace, per source
    assert checker.pending_pairs() == []


async def test_redirects_are_traced_with_hop_cap(site, fetcher):
    url = str(site.make_url('/redirect/5'))
    checker = ExternalLinkChecker(fetcher, {}, max_redirects=3)

    results = await checker.run([(url, 'https://example.com/')])
    result = results[(url, 'https://example.com/')]

    # The probe follows redirects; the trace stops at the cap
    assert result.status == 200
    assert result.redirect_chain.redirect_count == 3
    assert result.redirect_chain.max_redirects_reached


async def test_unreachable_link_skips_redirect_trace(fetcher):
    checker = ExternalLinkChecker(fetcher, {}, retries=0)

    results = await checker.run([('http://127.0.0.1:1/', 'https://example.com/')])
    result = results[('http://127.0.0.1:1/', 'https://example.com/')]

    assert result.status == FETCH_ERROR
    assert result.redirect_chain is None
    assert result.is_broken


async def test_unexpected_error_is_isolated_to_its_link(site, fetcher):
    good = str(site.make_url('/x'))

    class FlakyFetcher:
        async def fetch_with_retry(self, url, **kwargs):
            if url.endswith('/explode'):
                raise RuntimeError("parser blew up")
            return await fetcher.fetch_with_retry(url, **kwargs)

        async def check_redirect_chain(self, url, **kwargs):
            return await fetcher.check_redirect_chain(url, **kwargs)

    checker = ExternalLinkChecker(FlakyFetcher(), {})
    results = await checker.run([
        ('https://other.org/explode', 'https://example.com/'),
        (good, 'https://example.com/'),
    ])

    assert results[('https://other.org/explode', 'https://example.com/')].status == CHECK_ERROR
    assert results[(good, 'https://example.com/')].status == 200


async def test_link_cap_skips_extra_links(site, fetcher):
    checker = ExternalLinkChecker(fetcher, {}, max_links=2)

    accepted = checker.enqueue_many([
        (str(site.make_url(f'/x?n={n}')), 'https://example.com/') for n in range(5)
    ])
    await checker.join()

    assert accepted == 2
    assert checker.skipped == 3
    assert len(checker.results) == 2


async def test_checked_pairs_are_not_requeued(site, fetcher):
    url = str(site.make_url('/x'))
    checker = ExternalLinkChecker(fetcher, {}, max_parallel_checks=1)
    await checker.run([(url, 'https://example.com/')])

    resumed = ExternalLinkChecker(fetcher, checker.results)

    assert not resumed.enqueue(url, 'https://example.com/')
    assert resumed.enqueue(url, 'https://example.com/other')
