# GitHub Mod Crawler
# Crawls GitHub for mod metadata files and catalogs them, caching by commit fingerprint

from .cache import ModCache
from .crawler import ModCrawler
from .github_client import GitHubClient, RepositoryQuery
from .mod_parser import HeuristicMatch, ModParser, StructuredMatch
from .models import Catalog, CatalogEntry, CrawlState, ModRecord, RepositoryDescriptor
from .rate_limit import RateLimiter

__all__ = [
    'Catalog',
    'CatalogEntry',
    'CrawlState',
    'GitHubClient',
    'HeuristicMatch',
    'ModCache',
    'ModCrawler',
    'ModParser',
    'ModRecord',
    'RateLimiter',
    'RepositoryDescriptor',
    'RepositoryQuery',
    'StructuredMatch',
]
