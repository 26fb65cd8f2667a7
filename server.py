"""
feed-pager — Flask inspection server.

Exposes named feed instances over JSON so a front end (or curl) can drive
load-more, search, filters and refresh, and read snapshots and diagnostics.

Every feed is its own FeedManager, held in a FeedRegistry that belongs to the
app instance; two apps never share feeds. Async manager calls run to
completion inside the request via asyncio.run().

Run:
    FEEDPAGER_DATA_FILE=posts.json python server.py
    FEEDPAGER_CONTENT_URL=https://api.example.com/v1 python server.py

    curl -X POST localhost:8001/feeds/home/refresh
    curl -X POST localhost:8001/feeds/home/load-more
    curl -X POST localhost:8001/feeds/home/filters -H 'Content-Type: application/json' \\
         -d '{"content_kind": "audio", "sort_by": "popular"}'
"""

import asyncio
import logging
from typing import Callable

from flask import Flask, jsonify, request

from feed_config import FeedConfig, get_service_settings
from FeedManager import FeedManager, Transition
from FeedResolver import ContentRepository, LoadMoreOutcome
from FeedState import FilterOptions, summarize_state
from FeedTypes import ErrorKind
from FeedValidator import recommended_action

log = logging.getLogger("feedpager.server")

RepositoryFactory = Callable[[str], ContentRepository]

# Refusals the caller can simply wait out or ignore.
_CONFLICT = {
    ErrorKind.ALREADY_LOADING,
    ErrorKind.EXHAUSTED,
    ErrorKind.NO_MORE_ITEMS,
    ErrorKind.REENTRANT_CALL,
    ErrorKind.CONFLICTING_LOADING_STATE,
    ErrorKind.STALE_RESPONSE,
}


class FeedRegistry:
    """Named FeedManagers, created on first use from repository_factory."""

    def __init__(self, repository_factory: RepositoryFactory | None = None, config: FeedConfig | None = None):
        self._factory  = repository_factory
        self._config   = config or FeedConfig.from_env()
        self._managers: dict[str, FeedManager] = {}

    def add(self, name: str, manager: FeedManager) -> FeedManager:
        self._managers[name] = manager
        return manager

    def get(self, name: str) -> FeedManager | None:
        manager = self._managers.get(name)
        if manager is None and self._factory is not None:
            manager = self.add(name, FeedManager(self._factory(name), self._config))
            log.info(f"Created feed {name!r}")
        return manager

    def names(self) -> list[str]:
        return sorted(self._managers)


def _http_status(error: ErrorKind | None) -> int:
    if error is None:
        return 200
    if error in _CONFLICT:
        return 409
    if error.is_fetch_failure:
        return 502
    return 500


def _transition_json(t: Transition):
    body = {
        "ok":    t.ok,
        "error": t.error.value if t.error else None,
        "issue": t.issue.to_dict() if t.issue else None,
        "state": summarize_state(t.state),
    }
    return jsonify(body), _http_status(t.error)


def _outcome_json(manager: FeedManager, outcome: LoadMoreOutcome):
    body = outcome.to_dict()
    body["machine"] = manager.machine_status.value
    body["state"]   = summarize_state(manager.get_state())
    return jsonify(body), _http_status(outcome.error)


def create_app(
    repository_factory: RepositoryFactory | None = None,
    config: FeedConfig | None = None,
    registry: FeedRegistry | None = None,
) -> Flask:
    app   = Flask(__name__)
    feeds = registry or FeedRegistry(repository_factory, config)
    app.extensions["feedpager"] = feeds

    def lookup(name):
        manager = feeds.get(name)
        if manager is None:
            return None, (jsonify({"error": f"unknown feed {name!r}"}), 404)
        return manager, None

    # ── Reads ──────────────────────────────────────────────────────────────────

    @app.route("/feeds")
    def list_feeds():
        return jsonify({name: summarize_state(feeds.get(name).get_state()) for name in feeds.names()})

    @app.route("/feeds/<name>/state")
    def feed_state(name):
        manager, err = lookup(name)
        if err: return err
        state = manager.get_state()
        if request.args.get("full") in ("1", "true", "yes"):
            return jsonify(state.to_dict())
        return jsonify(summarize_state(state))

    @app.route("/feeds/<name>/diagnostics")
    def feed_diagnostics(name):
        manager, err = lookup(name)
        if err: return err
        diagnostics = asyncio.run(manager.validate_async())
        body = diagnostics.to_dict()
        body["recommended_action"] = recommended_action(diagnostics).value
        body["machine"]            = manager.machine.statistics()
        return jsonify(body)

    # ── Intents ────────────────────────────────────────────────────────────────

    @app.route("/feeds/<name>/load-more", methods=["POST"])
    def feed_load_more(name):
        manager, err = lookup(name)
        if err: return err
        return _outcome_json(manager, asyncio.run(manager.load_more()))

    @app.route("/feeds/<name>/refresh", methods=["POST"])
    def feed_refresh(name):
        manager, err = lookup(name)
        if err: return err
        return _outcome_json(manager, asyncio.run(manager.load_initial()))

    @app.route("/feeds/<name>/search", methods=["POST"])
    def feed_search(name):
        manager, err = lookup(name)
        if err: return err
        body    = request.get_json(silent=True) or {}
        query   = str(body.get("query") or "")
        results = body.get("results")
        if results is not None and not isinstance(results, list):
            return jsonify({"error": "'results' must be a list of item ids"}), 400

        if not query.strip():
            return _transition_json(manager.clear_search())

        repo = manager.repository
        if results is None and hasattr(repo, "search"):
            results = repo.search(query, manager.get_state().filter_state)
        return _transition_json(manager.update_search(query, results))

    @app.route("/feeds/<name>/search", methods=["DELETE"])
    def feed_clear_search(name):
        manager, err = lookup(name)
        if err: return err
        return _transition_json(manager.clear_search())

    @app.route("/feeds/<name>/filters", methods=["POST"])
    def feed_filters(name):
        manager, err = lookup(name)
        if err: return err
        body = request.get_json(silent=True)
        if not isinstance(body, dict):
            return jsonify({"error": "expected a JSON object"}), 400
        try:
            filters = FilterOptions(**body)
        except (TypeError, ValueError) as e:
            return jsonify({"error": f"invalid filters: {e}"}), 400
        return _transition_json(manager.update_filters(filters))

    @app.route("/feeds/<name>/reset", methods=["POST"])
    def feed_reset(name):
        manager, err = lookup(name)
        if err: return err
        return _transition_json(manager.reset())

    @app.route("/feeds/<name>/reconcile", methods=["POST"])
    def feed_reconcile(name):
        manager, err = lookup(name)
        if err: return err
        return _transition_json(manager.reconcile())

    return app


def _factory_from_env() -> RepositoryFactory | None:
    settings = get_service_settings()
    if settings.data_file:
        from FeedRepository import InMemoryRepository
        repo = InMemoryRepository.from_json_file(settings.data_file)
        return lambda name: repo
    if settings.content_url:
        from FeedRepository import HttpContentRepository
        headers = {"Authorization": f"Bearer {settings.token}"} if settings.token else None
        return lambda name: HttpContentRepository(settings.content_url, path=name, headers=headers)
    return None


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)-7s %(name)s: %(message)s")
    factory = _factory_from_env()
    if factory is None:
        raise SystemExit("Set FEEDPAGER_DATA_FILE or FEEDPAGER_CONTENT_URL")
    create_app(factory).run(port=8001, debug=False)
