"""
Shared fixtures: a small local web site served by aiohttp.

Pages live on 127.0.0.1; links to ``localhost`` on the same port count as
external because the two hosts have different registrable domains.
"""

import asyncio
from collections import Counter

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from site_audit.crawler.fetcher import WebFetcher
from site_audit.utils.config import Config


def page(title: str, body: str) -> str:
    return f"<html lang='en'><head><title>{title}</title></head><body>{body}</body></html>"


async def _counted(request: web.Request):
    request.app['hits'][request.path] += 1


async def home(request):
    await _counted(request)
    port = request.url.port
    return web.Response(content_type='text/html', text=page('Home', f"""
        <h1>Welcome</h1>
        <a href="/a">Page A</a>
        <a href="/b">Page B</a>
        <a href="/c/">Page C</a>
        <a href="http://localhost:{port}/x">Partner site</a>
        <a href="mailto:info@example.com">Mail us</a>
        <a href="#top">Back to top</a>
        <a href="javascript:void(0)">Menu</a>
    """))


async def page_a(request):
    await _counted(request)
    return web.Response(content_type='text/html', text=page('A', """
        <p>Alpha page with a few words</p><a href="/">Home</a><a href="/b">B again</a>
    """))


async def page_b(request):
    await _counted(request)
    return web.Response(content_type='text/html', text=page('B', '<a href="/c">C</a>'))


async def page_c(request):
    await _counted(request)
    return web.Response(content_type='text/html', text=page('C', '<a href="/a#frag">A</a>'))


async def external(request):
    await _counted(request)
    return web.Response(text='partner')


async def slow(request):
    await _counted(request)
    await asyncio.wait_for(request.app['release'].wait(), timeout=30)
    return web.Response(content_type='text/html', text=page('Slow', ''))


async def server_error(request):
    await _counted(request)
    return web.Response(status=500, text='boom')


async def redirect(request):
    await _counted(request)
    n = int(request.match_info['n'])
    if n == 0:
        return web.Response(content_type='text/html', text=page('Landed', ''))
    raise web.HTTPFound(f'/redirect/{n - 1}')


async def loop_a(request):
    await _counted(request)
    raise web.HTTPFound('/loop-b')


async def loop_b(request):
    await _counted(request)
    raise web.HTTPFound('/loop-a')


async def relative(request):
    await _counted(request)
    raise web.HTTPMovedPermanently('target')


async def no_location(request):
    await _counted(request)
    return web.Response(status=302)


async def target(request):
    await _counted(request)
    return web.Response(content_type='text/html', text=page('Target', ''))


async def big(request):
    await _counted(request)
    filler = '<p>' + ('lorem ipsum ' * 50) + '</p>'
    return web.Response(content_type='text/html', text=page('Big', filler * 20))


async def data(request):
    await _counted(request)
    return web.json_response({'hello': 'world'})


async def gate_start(request):
    await _counted(request)
    links = '<a href="/gate/parent">Parent</a><a href="/gate/slow">Slow</a>'
    if 'more' in request.query:
        links += '<a href="/gate/other">Other</a>'
    return web.Response(content_type='text/html', text=page('Gate', links))


async def gate_parent(request):
    await _counted(request)
    await asyncio.wait_for(request.app['gate'].wait(), timeout=30)
    return web.Response(content_type='text/html', text=page('Parent', '<a href="/gate/child">Child</a>'))


async def gate_slow(request):
    await _counted(request)
    await asyncio.wait_for(request.app['gate'].wait(), timeout=30)
    return web.Response(content_type='text/html', text=page('Slow', ''))


async def gate_leaf(request):
    await _counted(request)
    return web.Response(content_type='text/html', text=page(request.path, ''))


def build_app() -> web.Application:
    app = web.Application()
    app['hits'] = Counter()
    app['release'] = asyncio.Event()
    # Holds /gate/parent and /gate/slow until set
    app['gate'] = asyncio.Event()
    app.router.add_get('/gate/start', gate_start)
    app.router.add_get('/gate/parent', gate_parent)
    app.router.add_get('/gate/slow', gate_slow)
    app.router.add_get('/gate/child', gate_leaf)
    app.router.add_get('/gate/other', gate_leaf)
    app.router.add_get('/', home)
    app.router.add_get('/a', page_a)
    app.router.add_get('/b', page_b)
    app.router.add_get('/c', page_c)
    app.router.add_get('/x', external)
    app.router.add_get('/slow', slow)
    app.router.add_get('/error', server_error)
    app.router.add_get('/redirect/{n}', redirect)
    app.router.add_get('/loop-a', loop_a)
    app.router.add_get('/loop-b', loop_b)
    app.router.add_get('/rel/start', relative)
    app.router.add_get('/rel/target', target)
    app.router.add_get('/no-location', no_location)
    app.router.add_get('/big', big)
    app.router.add_get('/data.json', data)
    return app


@pytest.fixture
async def site():
    server = TestServer(build_app())
    await server.start_server()
    yield server
    server.app['release'].set()
    server.app['gate'].set()
    await server.close()


@pytest.fixture
async def fetcher():
    fetcher = WebFetcher(user_agent='site-audit-tests', request_timeout=5, retries=2, retry_backoff=0)
    await fetcher.start()
    yield fetcher
    await fetcher.close()


@pytest.fixture
def make_config(tmp_path):
    def _make(seed_url: str, **crawler):
        crawler_section = {
            'seed_url': seed_url,
            'max_parallel_crawl': 2,
            'max_parallel_checks': 2,
            'request_timeout': 5,
            'retry_backoff': 0,
        }
        crawler_section.update(crawler)
        return Config.from_dict({
            'crawler': crawler_section,
            'storage': {'output_dir': str(tmp_path / 'audits')},
            'monitoring': {'stats_interval': 60},
        })
    return _make
