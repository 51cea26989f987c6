"""
Tests for the built-in page analyzers.
"""

from bs4 import BeautifulSoup

from site_audit.crawler.analyzers import (
    AnalyzerSet, PageContext, analyze_content, analyze_meta, analyze_structured_data
)

HTML = """
<html lang="en-GB">
<head>
  <title>  Shop
     Home </title>
  <meta name="description" content="Everything for the garden">
  <meta property="og:description" content="ignored when name= exists">
  <link rel="canonical" href="/home">
  <script type="application/ld+json">{"@type": "Organization", "name": "Green Co"}</script>
  <script type="application/ld+json">{not json}</script>
</head>
<body>
  <h1>Welcome</h1>
  <p>Three little words</p>
  <!-- a comment with several words -->
  <script>var hidden = "not counted";</script>
  <img src="a.png" alt="A plant"><img src="b.png"><img src="c.png" alt="  ">
  <a href="/one">One</a><a name="anchor-only">x</a>
  <div itemscope itemtype="https://schema.org/Product">
    <span itemprop="name">Rake</span><meta itemprop="price" content="9.99">
  </div>
</body>
</html>
"""

CONTEXT = PageContext(url='https://shop.example.com/', status_code=200)


def soup() -> BeautifulSoup:
    return BeautifulSoup(HTML, 'lxml')


def test_meta():
    meta = analyze_meta(soup(), CONTEXT)

    assert meta['title'] == 'Shop Home'
    assert meta['description'] == 'Everything for the garden'
    assert meta['language'] == 'en-GB'
    assert meta['canonical_url'] == 'https://shop.example.com/home'
    assert meta['robots'] is None


def test_content_counts_visible_words_only():
    content = analyze_content(soup(), CONTEXT)

    # Welcome + Three little words + One + x + Rake
    assert content['word_count'] == 7
    assert content['images'] == 3
    assert content['images_missing_alt'] == 2
    assert content['anchors'] == 1


def test_structured_data_skips_invalid_json():
    data = analyze_structured_data(soup(), CONTEXT)

    assert data['Organization'] == [{'@type': 'Organization', 'name': 'Green Co'}]
    assert data['Product'] == [{'name': 'Rake', 'price': '9.99'}]


def test_default_set_runs_all_analyzers():
    results = AnalyzerSet().run(soup(), CONTEXT)

    assert list(results) == ['meta', 'headings', 'content', 'structured_data']
    assert results['headings']['h1'] == ['Welcome']
    assert results['headings']['h2'] == []
