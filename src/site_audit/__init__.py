"""
Site Audit Crawler

Crawls a single web site, records its internal link graph and the health of
its outbound links, and runs pluggable analyzers over every page.
"""

__version__ = "1.0.0"
__description__ = "Checkpointed site audit crawler with external link verification"
