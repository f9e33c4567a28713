"""
API endpoint tests for FastAPI Sanctions Screening API

Uses FastAPI's TestClient against a real matching engine whose sources are
seeded in memory. Tests cover validation, screening, batch screening,
statistics, refresh, health and error handling.
"""

import pytest
from pathlib import Path
from datetime import datetime, timezone
from unittest.mock import patch

import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from config_manager import ConfigManager
from downloader import WatchlistSource, FetchError
from screener import SanctionsMatchingEngine
from source_cache import SourceCache
from watchlist_models import SanctionedEntity, EntityType, EntityAlias, Address


class StaticSource(WatchlistSource):
    """Source serving a fixed entity list"""

    def __init__(self, name, entities, fail=False):
        super().__init__(url=f'https://example.test/{name.lower()}.xml')
        self.name = name
        self.entities = list(entities)
        self.fail = fail

    def fetch(self, timeout=120):
        if self.fail:
            raise FetchError(f"{self.name} unreachable", source=self.name)
        return b'<list/>'

    def parse(self, raw):
        return list(self.entities)


@pytest.fixture
def sources():
    ofac = StaticSource('OFAC', [
        SanctionedEntity(
            uid='36', source='OFAC', entity_type=EntityType.INDIVIDUAL,
            primary_name='Mohamed Ali Testman',
            aliases=(EntityAlias(name='Muhammad Ali Testman', category='strong'),),
            addresses=(Address.build(city='Cairo', country='Egypt'),),
            programs=('SDGT',),
        ),
        SanctionedEntity(
            uid='37', source='OFAC', entity_type=EntityType.ORGANIZATION,
            primary_name='Acme Trading LLC', programs=('IRAN',),
        ),
    ])
    un = StaticSource('UN', [
        SanctionedEntity(
            uid='6908555', source='UN', entity_type=EntityType.INDIVIDUAL,
            primary_name='Mohamed Ali Testman', reference_number='QDi.001', regime_code='QD',
        ),
    ])
    return [ofac, un]


@pytest.fixture
def config():
    ConfigManager.reset_instance()
    return ConfigManager(config_path=None)


@pytest.fixture
def engine(sources, config):
    cache = SourceCache()
    for source in sources:
        cache.seed(source.name, source.entities)
    engine = SanctionsMatchingEngine(sources=sources, config=config, cache=cache)
    yield engine
    engine.shutdown()


@pytest.fixture
def client(engine, config):
    """Create test client with the seeded engine patched in."""
    from api import server
    from fastapi.testclient import TestClient

    with patch.object(server, '_engine', engine):
        with patch.object(server, '_config', config):
            with patch.object(server, '_startup_time', datetime.now(timezone.utc)):
                yield TestClient(server.app)


# ============================================
# VALIDATION TESTS
# ============================================

class TestValidation:
    """Tests for input validation."""

    def test_threshold_out_of_range(self, client):
        response = client.post("/api/v1/screen", json={"fullName": "John Doe", "threshold": 1.5})
        assert response.status_code == 422

    def test_max_results_out_of_range(self, client):
        response = client.post("/api/v1/screen", json={"fullName": "John Doe", "maxResults": 0})
        assert response.status_code == 422

    def test_name_too_long(self, client):
        response = client.post("/api/v1/screen", json={"fullName": "A" * 201})
        assert response.status_code == 422

    def test_too_many_aliases(self, client):
        response = client.post(
            "/api/v1/screen",
            json={"fullName": "John Doe", "aliases": [f"Alias {i}" for i in range(51)]}
        )
        assert response.status_code == 422

    def test_batch_requires_profiles(self, client):
        response = client.post("/api/v1/screen/batch", json={"profiles": []})
        assert response.status_code == 422

    def test_profile_without_names_is_clear(self, client):
        response = client.post("/api/v1/screen", json={})
        assert response.status_code == 200
        data = response.json()
        assert data["matches"] == []
        assert data["search_terms"] == []
        assert data["summary"]["recommendation"] == "CLEAR"


# ============================================
# SCREENING TESTS
# ============================================

class TestScreening:
    """Tests for single-profile screening."""

    def test_hit_found(self, client):
        response = client.post(
            "/api/v1/screen",
            json={"firstName": "Mohamed", "lastName": "Ali Testman"}
        )
        assert response.status_code == 200
        data = response.json()

        assert len(data["matches"]) == 2
        assert data["summary"]["total_matches"] == 2
        assert data["summary"]["sources"] == ["OFAC", "UN"]
        assert data["summary"]["risk_score"] == 100
        assert data["summary"]["recommendation"] == "REJECT"
        assert data["failed_sources"] == []
        assert data["search_terms"][0] == "Mohamed Ali Testman"
        assert "screening_id" in data
        assert "screening_date" in data
        assert "processing_time_ms" in data
        assert data["algorithm_version"] == "1.0.0"

    def test_match_structure(self, client):
        response = client.post("/api/v1/screen", json={"fullName": "Mohamed Ali Testman"})
        match = response.json()["matches"][0]

        assert match["source"] == "OFAC"
        assert match["matched_field"] == "NAME"
        assert match["confidence"] == 1.0
        assert match["weighted_confidence"] == 1.0
        assert match["risk_level"] == "CRITICAL"
        assert match["search_term"] == "Mohamed Ali Testman"
        assert "EXACT_MATCH" in match["flags"]

        entity = match["entity"]
        assert entity["uid"] == "36"
        assert entity["entity_type"] == "INDIVIDUAL"
        assert entity["programs"] == ["SDGT"]
        assert entity["aliases"][0]["name"] == "Muhammad Ali Testman"
        assert entity["addresses"][0]["full_address"] == "Cairo, Egypt"

    def test_name_key_accepted(self, client):
        response = client.post("/api/v1/screen", json={"name": "Acme Trading LLC"})
        assert response.status_code == 200
        assert response.json()["matches"][0]["entity"]["uid"] == "37"

    def test_alias_objects_accepted(self, client):
        response = client.post(
            "/api/v1/screen",
            json={
                "fullName": "Zqxv Plokij",
                "aliases": [{"name": "Acme Trading LLC"}, {"fullName": "Mohamed Ali Testman"}, "Qwrt Ypsd"],
            }
        )
        assert response.status_code == 200
        data = response.json()

        assert data["search_terms"] == [
            "Zqxv Plokij", "Acme Trading LLC", "Mohamed Ali Testman", "Qwrt Ypsd"
        ]
        assert {m["entity"]["uid"] for m in data["matches"]} == {"36", "37", "6908555"}

    def test_no_hit(self, client):
        response = client.post("/api/v1/screen", json={"fullName": "Zqxv Plokij"})
        assert response.status_code == 200
        data = response.json()

        assert data["matches"] == []
        assert data["summary"]["risk_score"] == 0
        assert data["summary"]["recommendation"] == "CLEAR"

    def test_options_applied(self, client):
        response = client.post(
            "/api/v1/screen",
            json={"fullName": "Mohamed Ali Testman", "maxResults": 1}
        )
        assert len(response.json()["matches"]) == 1

    def test_failed_source_reported(self, client, engine):
        broken = StaticSource('EU', [], fail=True)
        engine.sources.append(broken)

        response = client.post("/api/v1/screen", json={"fullName": "Mohamed Ali Testman"})

        data = response.json()
        assert data["failed_sources"] == ["EU"]
        assert len(data["matches"]) == 2


# ============================================
# BATCH TESTS
# ============================================

class TestBatchScreening:
    """Tests for batch screening."""

    def test_batch(self, client):
        response = client.post(
            "/api/v1/screen/batch",
            json={
                "profiles": [
                    {"fullName": "Mohamed Ali Testman"},
                    {"companyName": "Acme Trading LLC"},
                    {"fullName": "Zqxv Plokij"},
                ],
                "batchSize": 2,
            }
        )
        assert response.status_code == 200
        data = response.json()

        assert data["total_submitted"] == 3
        assert data["total_processed"] == 3
        recommendations = [r["summary"]["recommendation"] for r in data["results"]]
        assert recommendations == ["REJECT", "REJECT", "CLEAR"]

    def test_batch_threshold(self, client):
        response = client.post(
            "/api/v1/screen/batch",
            json={"profiles": [{"fullName": "Mohamed Ali Testmann"}], "threshold": 1.0}
        )
        assert response.json()["results"][0]["matches"] == []


# ============================================
# DATA MANAGEMENT TESTS
# ============================================

class TestDataEndpoints:
    """Tests for statistics and refresh."""

    def test_stats(self, client):
        response = client.get("/api/v1/stats")
        assert response.status_code == 200
        data = response.json()

        assert data["total_entries"] == 3
        assert [s["name"] for s in data["services"]] == ["OFAC", "UN"]
        assert data["services"][0]["total_entries"] == 2
        assert data["services"][0]["stale"] is False
        assert data["last_update"] is not None

    def test_refresh(self, client):
        response = client.post("/api/v1/data/refresh")
        assert response.status_code == 200
        data = response.json()

        assert data["success"] is True
        assert [r["status"] for r in data["results"]] == ["success", "success"]
        assert data["total_entities"] == 3

    def test_refresh_partial_failure(self, client, sources):
        sources[1].fail = True

        data = client.post("/api/v1/data/refresh").json()

        assert data["success"] is False
        assert data["results"][1] == {"service": "UN", "status": "error", "error": "UN unreachable"}
        # UN keeps its previous entity set
        assert data["total_entities"] == 3


# ============================================
# HEALTH TESTS
# ============================================

class TestHealth:
    """Tests for health check endpoint."""

    def test_healthy(self, client):
        response = client.get("/api/v1/health")
        assert response.status_code == 200
        data = response.json()

        assert data["status"] == "healthy"
        assert data["entities_loaded"] == 3
        assert data["algorithm_version"] == "1.0.0"
        assert data["uptime_seconds"] >= 0

    def test_degraded_without_data(self, client, engine):
        engine.sources.append(StaticSource('EU', []))

        data = client.get("/api/v1/health").json()

        assert data["status"] == "degraded"
        assert data["sources"][-1]["name"] == "EU"
        assert data["sources"][-1]["last_update"] is None


# ============================================
# ERROR HANDLING TESTS
# ============================================

class TestErrorHandling:
    """Tests for error responses and middleware."""

    def test_engine_not_initialized(self, client):
        from api import server

        with patch.object(server, '_engine', None):
            response = client.post("/api/v1/screen", json={"fullName": "John Doe"})

        assert response.status_code == 503
        assert response.json()["error"]["code"] == "HTTP_503"

    def test_request_id_generated(self, client):
        response = client.get("/api/v1/stats")
        assert len(response.headers["X-Request-ID"]) == 32
        assert int(response.headers["X-Processing-Time-MS"]) >= 0

    def test_request_id_echoed(self, client):
        response = client.get("/api/v1/stats", headers={"X-Request-ID": "abc-123"})
        assert response.headers["X-Request-ID"] == "abc-123"

    def test_unknown_route(self, client):
        response = client.get("/api/v1/missing")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "HTTP_404"

    def test_validation_error_envelope(self, client):
        response = client.post("/api/v1/screen", json={"fullName": "John Doe", "threshold": 1.5})

        error = response.json()["error"]
        assert error["code"] == "VALIDATION_ERROR"
        assert error["field"] == "threshold"
        assert error["request_id"] == response.headers["X-Request-ID"]

    def test_source_error_mapped(self, client, engine):
        from api import server
        from fastapi.testclient import TestClient
        from source_cache import SearchError

        unsafe_client = TestClient(server.app, raise_server_exceptions=False)
        with patch.object(engine, 'get_stats', side_effect=SearchError("No UN data available", source='UN')):
            response = unsafe_client.get("/api/v1/stats")

        assert response.status_code == 503
        assert response.json()["error"]["code"] == "SOURCE_UNAVAILABLE"

    def test_unexpected_error_hides_details(self, client, engine):
        from api import server
        from fastapi.testclient import TestClient

        unsafe_client = TestClient(server.app, raise_server_exceptions=False)
        with patch.object(engine, 'get_stats', side_effect=RuntimeError("secret internals")):
            response = unsafe_client.get("/api/v1/stats")

        assert response.status_code == 500
        error = response.json()["error"]
        assert error["code"] == "INTERNAL_ERROR"
        assert "secret" not in error["message"]

    def test_root_redirects_to_docs(self, client):
        response = client.get("/", follow_redirects=False)
        assert response.status_code in (302, 307)
        assert response.headers["location"] == "/api/docs"
