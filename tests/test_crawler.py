"""End-to-end crawl tests against the in-memory GitHub API."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from modcrawler.cache import ModCache
from modcrawler.crawler import ModCrawler, main
from modcrawler.errors import ConfigError, StoreError, TransientError
from modcrawler.github_client import GitHubClient, RepositoryQuery
from modcrawler.models import Catalog, CatalogEntry, CrawlState, RepositoryDescriptor
from tests._fixtures.github import FakeGitHub

QUERY = RepositoryQuery("topic", "mindustry-mod")

COOL_MOD = b"name: CoolMod\nversion: 1.2.0\n"


def _crawler(github: FakeGitHub, cache: ModCache, **kwargs) -> ModCrawler:
    client = GitHubClient("token", session=github, sleep=lambda seconds: None, max_attempts=2)
    return ModCrawler(client, cache, **kwargs)


def _states(catalog: Catalog) -> list:
    return [(entry.repo, entry.state) for entry in catalog]


def test_parses_and_then_serves_from_cache(github: FakeGitHub, cache: ModCache) -> None:
    github.add_repo("acme/cool-mod", "abc123", {"mod.hjson": COOL_MOD})
    crawler = _crawler(github, cache)

    catalog = crawler.crawl(QUERY)

    assert _states(catalog) == [("acme/cool-mod", CrawlState.PARSED_OK)]
    record = catalog[0].record
    assert (record.name, record.version, record.dependencies) == ("CoolMod", "1.2.0", ())
    assert catalog[0].fingerprint == "abc123"
    assert cache.get("acme/cool-mod", "abc123").record == record

    github.reset_calls()
    again = crawler.crawl(QUERY)

    assert _states(again) == [("acme/cool-mod", CrawlState.CACHE_HIT)]
    assert again[0].record == record
    assert github.count("contents") == 0
    assert github.count("commits") == 1


def test_contents_are_read_at_the_fingerprint(github: FakeGitHub, cache: ModCache) -> None:
    github.add_repo("acme/cool-mod", "abc123", {"assets/mod.json": b'{"name": "cool", "version": "1"}'})

    catalog = _crawler(github, cache).crawl(QUERY)

    assert catalog[0].record.source_path == "assets/mod.json"
    refs = {call[3] for call in github.calls if call[0] == "contents"}
    assert refs == {"abc123"}


def test_no_metadata_is_cached_negatively(github: FakeGitHub, cache: ModCache) -> None:
    github.add_repo("acme/empty", "def456", {"README.md": b"just some words\n"})
    crawler = _crawler(github, cache)

    first = crawler.crawl(QUERY)
    assert _states(first) == [("acme/empty", CrawlState.NO_METADATA)]
    assert first[0].reason == "no_metadata"
    assert cache.has_negative("acme/empty", "def456")

    github.reset_calls()
    second = crawler.crawl(QUERY)

    assert _states(second) == [("acme/empty", CrawlState.CACHE_HIT)]
    assert second[0].record is None
    assert second[0].reason == "no_metadata"
    assert github.count("contents") == 0


def test_malformed_config_is_cached_negatively(github: FakeGitHub, cache: ModCache) -> None:
    github.add_repo("acme/broken", "fff000", {"mod.json": b'{"name": 42, "version": true}'})

    catalog = _crawler(github, cache).crawl(QUERY)

    assert _states(catalog) == [("acme/broken", CrawlState.NO_METADATA)]
    assert catalog[0].reason == "malformed"
    assert cache.get("acme/broken", "fff000").negative_reason == "malformed"


def test_new_fingerprint_is_refetched(github: FakeGitHub, cache: ModCache) -> None:
    github.add_repo("acme/cool-mod", "abc123", {"mod.hjson": COOL_MOD})
    crawler = _crawler(github, cache)
    crawler.crawl(QUERY)

    github.set_head("acme/cool-mod", "def456", {"mod.hjson": b"name: CoolMod\nversion: 1.3.0\n"})
    catalog = crawler.crawl(QUERY)

    assert _states(catalog) == [("acme/cool-mod", CrawlState.PARSED_OK)]
    assert catalog[0].record.version == "1.3.0"
    assert len(cache.history("acme/cool-mod")) == 2

    assert crawler.prune(catalog) == 1
    assert [e.fingerprint for e in cache.history("acme/cool-mod")] == ["def456"]


def test_partial_record(github: FakeGitHub, cache: ModCache) -> None:
    github.add_repo("acme/solo", "abc123", {"mod.json": b'{"name": "solo"}'})

    catalog = _crawler(github, cache).crawl(QUERY)

    assert _states(catalog) == [("acme/solo", CrawlState.PARSED_PARTIAL)]


def test_failures_are_isolated_and_not_cached(github: FakeGitHub, cache: ModCache) -> None:
    github.add_repo("acme/first", "a1", {"mod.hjson": COOL_MOD})
    github.add_repo("acme/flaky", "b2", {"mod.hjson": COOL_MOD})
    github.add_repo("acme/private", "c3", {"mod.hjson": COOL_MOD})
    github.add_repo("acme/last", "d4", {"mod.hjson": COOL_MOD})
    github.content_status["acme/flaky"] = 500
    github.content_status["acme/private"] = 403

    catalog = _crawler(github, cache).crawl(QUERY)

    assert _states(catalog) == [
        ("acme/first", CrawlState.PARSED_OK),
        ("acme/flaky", CrawlState.FETCH_FAILED),
        ("acme/private", CrawlState.FETCH_FAILED),
        ("acme/last", CrawlState.PARSED_OK),
    ]
    assert catalog[1].reason.startswith("transient:")
    assert catalog[2].reason.startswith("permanent:")
    assert cache.get("acme/flaky", "b2") is None
    assert cache.get("acme/private", "c3") is None

    summary = catalog.summary()
    assert (summary.processed, summary.fetched, len(summary.failures)) == (4, 2, 2)


def test_order_follows_discovery_not_completion(github: FakeGitHub, cache: ModCache) -> None:
    names = [f"acme/mod-{i}" for i in range(6)]
    for i, name in enumerate(names):
        github.add_repo(name, f"sha{i}", {"mod.hjson": COOL_MOD})
        github.delays[name] = 0.05 * (len(names) - i)

    catalog = _crawler(github, cache, max_workers=4).crawl(QUERY)

    assert [entry.repo for entry in catalog] == names
    assert all(entry.state == CrawlState.PARSED_OK for entry in catalog)


def test_repositories_listed_twice_are_crawled_once(github: FakeGitHub, cache: ModCache) -> None:
    github.add_repo("acme/cool-mod", "abc123", {"mod.hjson": COOL_MOD})

    catalog = _crawler(github, cache).crawl([QUERY, RepositoryQuery("topic", "mindustry-mod")])

    assert len(catalog) == 1
    assert github.count("commits") == 1


def test_rejected_token_stops_before_any_repository(github: FakeGitHub, cache: ModCache) -> None:
    github.add_repo("acme/cool-mod", "abc123", {"mod.hjson": COOL_MOD})
    github.auth_status = 401

    with pytest.raises(ConfigError):
        _crawler(github, cache).crawl(QUERY)
    assert github.calls == [("rate_limit",)]


def test_empty_or_invalid_queries_are_config_errors(github: FakeGitHub, cache: ModCache) -> None:
    crawler = _crawler(github, cache)
    with pytest.raises(ConfigError):
        crawler.crawl([])
    with pytest.raises(ConfigError):
        crawler.crawl(RepositoryQuery("topic", ""))
    assert github.calls == []


def test_cache_read_failure_counts_as_miss(
    github: FakeGitHub, cache: ModCache, monkeypatch: pytest.MonkeyPatch
) -> None:
    github.add_repo("acme/cool-mod", "abc123", {"mod.hjson": COOL_MOD})

    def broken_get(repo: str, fingerprint: str) -> None:
        raise StoreError("disk on fire")

    monkeypatch.setattr(cache, "get", broken_get)

    catalog = _crawler(github, cache).crawl(QUERY)

    assert _states(catalog) == [("acme/cool-mod", CrawlState.PARSED_OK)]


def test_cache_write_failure_keeps_the_result(
    github: FakeGitHub, cache: ModCache, monkeypatch: pytest.MonkeyPatch
) -> None:
    github.add_repo("acme/cool-mod", "abc123", {"mod.hjson": COOL_MOD})

    def broken_put(*args: object) -> None:
        raise StoreError("read-only")

    monkeypatch.setattr(cache, "put_record", broken_put)

    catalog = _crawler(github, cache).crawl(QUERY)

    assert _states(catalog) == [("acme/cool-mod", CrawlState.PARSED_OK)]
    assert len(cache) == 0


def test_unexpected_errors_become_failed_entries(
    github: FakeGitHub, cache: ModCache, monkeypatch: pytest.MonkeyPatch
) -> None:
    github.add_repo("acme/cool-mod", "abc123", {"mod.hjson": COOL_MOD})
    crawler = _crawler(github, cache)

    def explode(*args: object) -> None:
        raise RuntimeError("parser bug")

    monkeypatch.setattr(crawler.parser, "parse", explode)

    catalog = crawler.crawl(QUERY)

    assert _states(catalog) == [("acme/cool-mod", CrawlState.FETCH_FAILED)]
    assert catalog[0].reason == "error: parser bug"


def test_listing_failure_keeps_discovered_repositories(
    github: FakeGitHub, cache: ModCache, monkeypatch: pytest.MonkeyPatch
) -> None:
    github.add_repo("acme/cool-mod", "abc123", {"mod.hjson": COOL_MOD})
    crawler = _crawler(github, cache)

    def broken_listing(query: RepositoryQuery):
        yield RepositoryDescriptor(owner="acme", name="cool-mod")
        raise TransientError("search went away")

    monkeypatch.setattr(crawler.client, "list_repositories", broken_listing)

    catalog = crawler.crawl(QUERY)

    assert _states(catalog) == [("acme/cool-mod", CrawlState.PARSED_OK)]
    assert catalog.listing_errors == ["search went away"]
    assert ("<listing>", "search went away") in catalog.summary().failures


def test_cancel_stops_dispatching(github: FakeGitHub, cache: ModCache) -> None:
    for i in range(3):
        github.add_repo(f"acme/mod-{i}", f"sha{i}", {"mod.hjson": COOL_MOD})
    crawler = _crawler(github, cache, max_workers=1, max_pending=1)
    github.on_contents = lambda repo, path: crawler.cancel()

    catalog = crawler.crawl(QUERY)

    assert _states(catalog) == [("acme/mod-0", CrawlState.PARSED_OK)]
    assert github.count("commits") == 1


def test_catalog_rejects_non_terminal_entries() -> None:
    with pytest.raises(ValueError):
        Catalog().append(CatalogEntry(repo="acme/a", state=CrawlState.FETCHING))


def test_catalog_save_and_summary(github: FakeGitHub, cache: ModCache, tmp_path: Path) -> None:
    github.add_repo("acme/cool-mod", "a1", {"mod.hjson": COOL_MOD})
    github.add_repo("acme/empty", "b2", {})
    github.add_repo("acme/down", "c3", {"mod.hjson": COOL_MOD})
    github.content_status["acme/down"] = 503

    catalog = _crawler(github, cache).crawl(QUERY)
    summary = catalog.summary()
    assert str(summary) == "3 repositories processed, 0 cache hits, 1 failures"
    assert (summary.fetched, summary.no_metadata) == (1, 1)

    output = tmp_path / "out" / "catalog.json"
    catalog.save(output)
    data = json.loads(output.read_text(encoding="utf-8"))

    assert data["version"] == "3.2"
    assert [e["state"] for e in data["entries"]] == ["parsed_ok", "no_metadata", "fetch_failed"]
    assert data["entries"][0]["record"]["name"] == "CoolMod"
    assert data["entries"][0]["source"]["fingerprint"] == "a1"
    assert data["summary"]["failures"][0]["repo"] == "acme/down"


def test_main_writes_catalog(
    github: FakeGitHub, tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture
) -> None:
    github.add_repo("acme/cool-mod", "abc123", {"mod.hjson": COOL_MOD})
    monkeypatch.setenv("GITHUB_TOKEN", "ghp_test")
    monkeypatch.setattr("modcrawler.github_client.requests.Session", lambda: github)
    output = tmp_path / "catalog.json"

    code = main([
        "--topic", "mindustry-mod",
        "--cache-dir", str(tmp_path / "cache"),
        "--output", str(output),
        "--workers", "2",
    ])

    assert code == 0
    assert json.loads(output.read_text(encoding="utf-8"))["entries"][0]["repo"] == "acme/cool-mod"
    assert "1 repositories processed" in capsys.readouterr().out


def test_main_without_token_exits_with_config_error(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.delenv("GITHUB_TOKEN", raising=False)

    assert main(["--cache-dir", str(tmp_path / "cache")]) == 2


def test_record_carries_readme_assets_and_raw_files(github: FakeGitHub, cache: ModCache) -> None:
    readme = b"# Cool Mod\n\nDoes cool things.\n"
    github.add_repo("acme/cool-mod", "abc123", {
        "mod.hjson": COOL_MOD,
        "README.md": readme,
        "sprites/blocks/wall.png": b"\x89PNG",
        "assets/content/blocks/wall.json": b"{}",
        "assets/content/units/dagger.json": b"{}",
        "bundles/bundle.properties": b"",
    })

    catalog = _crawler(github, cache).crawl(QUERY)

    record = catalog[0].record
    assert record.readme == readme.decode("utf-8")
    assert record.assets == ("content", "bundles", "sprites")
    assert record.contents == ("blocks", "units")
    assert record.date == "2020-03-18T16:35:29Z"

    entry = cache.get("acme/cool-mod", "abc123")
    assert entry.record == record
    assert entry.blobs == {"mod.hjson": COOL_MOD, "README.md": readme}

    fetched = [call[2] for call in github.calls if call[0] == "contents"]
    assert fetched == ["mod.hjson", "README.md"]
    assert github.count("tree") == 1


def test_readme_match_is_stored_once(github: FakeGitHub, cache: ModCache) -> None:
    readme = b"# Turrets Plus\n\nversion: 0.4\n"
    github.add_repo("acme/turrets", "abc123", {"README.md": readme})

    catalog = _crawler(github, cache).crawl(QUERY)

    assert catalog[0].record.readme == readme.decode("utf-8")
    assert cache.get("acme/turrets", "abc123").blobs == {"README.md": readme}
    assert github.count("contents") == 1


def test_unavailable_token_check_is_config_error(github: FakeGitHub, cache: ModCache) -> None:
    github.add_repo("acme/cool-mod", "abc123", {"mod.hjson": COOL_MOD})
    github.auth_status = 503

    with pytest.raises(ConfigError):
        _crawler(github, cache).crawl(QUERY)
    assert github.count("search") == 0


def test_main_exits_cleanly_when_token_check_fails(
    github: FakeGitHub, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    github.auth_status = 418
    monkeypatch.setenv("GITHUB_TOKEN", "ghp_test")
    monkeypatch.setattr("modcrawler.github_client.requests.Session", lambda: github)

    code = main(["--topic", "mindustry-mod", "--cache-dir", str(tmp_path / "cache"),
                 "--output", str(tmp_path / "catalog.json")])

    assert code == 2
    assert not (tmp_path / "catalog.json").exists()


def test_cancelled_run_reports_skipped_repositories(github: FakeGitHub, cache: ModCache) -> None:
    for i in range(3):
        github.add_repo(f"acme/mod-{i}", f"sha{i}", {"mod.hjson": COOL_MOD})
    crawler = _crawler(github, cache, max_workers=1, max_pending=3)
    github.on_contents = lambda repo, path: crawler.cancel()

    catalog = crawler.crawl(QUERY)
    summary = catalog.summary()

    assert _states(catalog) == [("acme/mod-0", CrawlState.PARSED_OK)]
    assert (summary.cancelled, summary.skipped) == (True, 2)
    assert str(summary).endswith("cancelled with 2 queued repositories skipped")
    assert catalog.to_dict()["summary"]["skipped"] == 2
