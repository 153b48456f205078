import time
from datetime import datetime, timezone

import pytest
from conftest import ScriptedExtractor, make_config, page
from fastapi.testclient import TestClient

from catalog_crawler.config import Settings
from catalog_crawler.main import create_app
from catalog_crawler.runtime import CrawlerRuntime
from catalog_crawler.store import MemoryCrawlerStore
from catalog_crawler.tuning import MemoryMetricsStore
from catalog_crawler.worker import ProxyPool

ADMIN = {"X-API-Key": "admin-key"}
OPERATOR = {"X-API-Key": "operator-key"}
TARGET = "https://shop.test/catalog"

CONFIG = {
    "name": "Shop catalog",
    "target_url": TARGET,
    "selectors": {"container": "div.product", "fields": {"name": ".name", "price": ".price"}},
    "rate_limit": 120,
    "frequency": "daily",
    "supplier_id": "acme",
    "options": {"max_pages": 10, "retry_attempts": 1},
}


@pytest.fixture
def runtime():
    settings = Settings(
        admin_api_keys=["admin-key"],
        operator_api_keys=["operator-key"],
        store_backend="memory",
        use_headless_browser=False,
    )
    return CrawlerRuntime.build(
        settings,
        store=MemoryCrawlerStore(),
        extractor=ScriptedExtractor({TARGET: page("Blue Mug", "Red Mug")}),
        metrics_store=MemoryMetricsStore(),
        proxy_pool=ProxyPool.from_addresses(["http://p1"]),
    )


@pytest.fixture
def client(runtime):
    with TestClient(create_app(runtime)) as test_client:
        yield test_client


def wait_for_job(client, job_id):
    for _ in range(500):
        job = client.get(f"/api/jobs/{job_id}", headers=OPERATOR).json()
        if job["status"] != "running":
            return job
        time.sleep(0.01)
    raise AssertionError(f"job {job_id} did not finish")


def test_health_needs_no_key(client):
    response = client.get("/api/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_api_keys_are_enforced(client):
    assert client.get("/api/configs").status_code == 401
    assert client.get("/api/configs", headers={"X-API-Key": "nope"}).status_code == 403
    assert client.post("/api/configs", json=CONFIG, headers=OPERATOR).status_code == 403
    assert client.get("/api/configs", headers=OPERATOR).status_code == 200


def test_config_validation(client):
    custom = dict(CONFIG, frequency="custom")
    assert client.post("/api/configs", json=custom, headers=ADMIN).status_code == 422
    bad_cron = dict(CONFIG, frequency="custom", cron_expression="every tuesday")
    assert client.post("/api/configs", json=bad_cron, headers=ADMIN).status_code == 422
    no_container = dict(CONFIG, selectors={"fields": {"name": ".name", "price": ".price"}})
    assert client.post("/api/configs", json=no_container, headers=ADMIN).status_code == 422


def test_create_config_run_job_and_inspect(client):
    created = client.post("/api/configs", json=CONFIG, headers=ADMIN)
    assert created.status_code == 201
    config = created.json()
    assert config["options"]["max_pages"] == 10
    assert config["options"]["use_headless_browser"] is False
    assert config["next_crawl"] is not None

    started = client.post(f"/api/configs/{config['config_id']}/jobs", headers=OPERATOR)
    assert started.status_code == 202
    job = wait_for_job(client, started.json()["job_id"])
    assert job["status"] == "completed"
    assert job["records_found"] == 2
    assert job["products_created"] == 2
    assert job["progress"] == 100.0

    listed = client.get("/api/jobs", params={"config_id": config["config_id"]}, headers=OPERATOR).json()
    assert [item["job_id"] for item in listed] == [job["job_id"]]

    stopped = client.post(f"/api/jobs/{job['job_id']}/stop", headers=OPERATOR)
    assert stopped.json()["status"] == "completed"

    hints = client.get(f"/api/jobs/{job['job_id']}/recommendations", headers=OPERATOR)
    assert hints.status_code == 200
    assert hints.json()["concurrency"] in {3, 5, 10}

    deactivated = client.post(f"/api/configs/{config['config_id']}/deactivate", headers=ADMIN)
    assert deactivated.json()["status"] == "idle"


def test_missing_resources_return_404(client):
    assert client.post("/api/configs/missing/jobs", headers=OPERATOR).status_code == 404
    assert client.get("/api/jobs/missing", headers=OPERATOR).status_code == 404
    assert client.get("/api/configs/missing", headers=OPERATOR).status_code == 404


def test_quarantine_management(client):
    url = "https://shop.test/broken"
    marked = client.post("/api/quarantine", json={"config_id": "shop", "url": url}, headers=ADMIN)
    assert marked.status_code == 200
    assert marked.json()["skip"] is True

    listed = client.get("/api/quarantine", params={"config_id": "shop"}, headers=OPERATOR).json()
    assert [entry["url"] for entry in listed] == [url]

    params = {"config_id": "shop", "url": url}
    assert client.delete("/api/quarantine", params=params, headers=OPERATOR).status_code == 403
    assert client.delete("/api/quarantine", params=params, headers=ADMIN).status_code == 204
    assert client.delete("/api/quarantine", params=params, headers=ADMIN).status_code == 404


def test_proxy_management(client, runtime):
    runtime.proxy_pool.proxies["http://p1"].disabled = True

    proxies = client.get("/api/proxies", headers=ADMIN).json()
    assert proxies[0]["disabled"] is True

    enabled = client.post("/api/proxies/enable", json={"address": "http://p1"}, headers=ADMIN)
    assert enabled.json()["disabled"] is False
    assert client.post("/api/proxies/enable", json={"address": "http://nope"}, headers=ADMIN).status_code == 404


def test_proxies_can_be_added_and_removed(client, runtime):
    added = client.post("/api/proxies", json={"address": "http://p2"}, headers=ADMIN)
    assert added.status_code == 201
    assert added.json()["disabled"] is False
    assert [proxy["address"] for proxy in client.get("/api/proxies", headers=ADMIN).json()] == ["http://p1", "http://p2"]
    assert client.post("/api/proxies", json={"address": "http://p3"}, headers=OPERATOR).status_code == 403

    params = {"address": "http://p1"}
    assert client.delete("/api/proxies", params=params, headers=ADMIN).status_code == 204
    assert client.delete("/api/proxies", params=params, headers=ADMIN).status_code == 404
    assert list(runtime.proxy_pool.proxies) == ["http://p2"]


def test_metrics_endpoint(client):
    response = client.get("/metrics")
    assert response.status_code == 200
    assert "catalog_crawler_jobs_started_total" in response.text


def test_config_edit_keeps_crawl_history(client, runtime):
    last_crawled = datetime(2024, 1, 1, tzinfo=timezone.utc)
    runtime.store.configs["shop"] = make_config(
        last_crawled=last_crawled, next_crawl=datetime(2024, 1, 2, tzinfo=timezone.utc)
    )

    response = client.patch(
        "/api/configs/shop",
        json={"rate_limit": 30, "frequency": "weekly", "options": {"max_pages": 7}},
        headers=ADMIN,
    )
    assert response.status_code == 200
    config = response.json()
    assert config["rate_limit"] == 30
    assert config["frequency"] == "weekly"
    assert config["options"]["max_pages"] == 7
    assert config["options"]["retry_attempts"] == 3
    assert config["last_crawled"].startswith("2024-01-01T00:00:00")
    assert config["next_crawl"].startswith("2024-01-08T00:00:00")
    assert runtime.store.configs["shop"].last_crawled == last_crawled

    renamed = client.patch("/api/configs/shop", json={"name": "Renamed"}, headers=ADMIN).json()
    assert renamed["name"] == "Renamed"
    assert renamed["next_crawl"].startswith("2024-01-08T00:00:00")


def test_config_edit_rejections(client, runtime):
    runtime.store.configs["shop"] = make_config()
    assert client.patch("/api/configs/shop", json={"rate_limit": 30}, headers=OPERATOR).status_code == 403
    assert client.patch("/api/configs/missing", json={"rate_limit": 30}, headers=ADMIN).status_code == 404
    assert client.patch("/api/configs/shop", json={"rate_limit": 0}, headers=ADMIN).status_code == 422
    assert client.patch("/api/configs/shop", json={"frequency": "custom"}, headers=ADMIN).status_code == 422
    assert client.patch("/api/configs/shop", json={"selectors": {"fields": {}}}, headers=ADMIN).status_code == 422
    assert runtime.store.configs["shop"].frequency.value == "daily"
    assert runtime.store.configs["shop"].selectors == make_config().selectors


def test_domain_allowlist_management(client):
    created = client.post("/api/domains", json={"domain": "Shop.Test", "notes": "main store"}, headers=ADMIN)
    assert created.status_code == 201
    assert created.json()["domain"] == "shop.test"
    assert created.json()["allowed"] is True
    assert client.post("/api/domains", json={"domain": "mirror.test"}, headers=OPERATOR).status_code == 403
    assert client.post("/api/domains", json={"domain": "   "}, headers=ADMIN).status_code == 422

    blocked = client.patch("/api/domains/shop.test", json={"allowed": False}, headers=ADMIN)
    assert blocked.json()["allowed"] is False
    assert blocked.json()["notes"] == "main store"
    assert client.patch("/api/domains/missing.test", json={"allowed": True}, headers=ADMIN).status_code == 404

    listed = client.get("/api/domains", headers=OPERATOR).json()
    assert [(entry["domain"], entry["allowed"]) for entry in listed] == [("shop.test", False)]

    assert client.delete("/api/domains/shop.test", headers=ADMIN).status_code == 204
    assert client.delete("/api/domains/shop.test", headers=ADMIN).status_code == 404


def test_enforced_allowlist_refuses_jobs_for_unknown_hosts():
    settings = Settings(
        admin_api_keys=["admin-key"],
        operator_api_keys=["operator-key"],
        store_backend="memory",
        use_headless_browser=False,
        enforce_domain_allowlist=True,
    )
    runtime = CrawlerRuntime.build(
        settings,
        store=MemoryCrawlerStore(),
        extractor=ScriptedExtractor({TARGET: page("Blue Mug")}),
        metrics_store=MemoryMetricsStore(),
    )
    with TestClient(create_app(runtime)) as client:
        config_id = client.post("/api/configs", json=CONFIG, headers=ADMIN).json()["config_id"]
        refused = client.post(f"/api/configs/{config_id}/jobs", headers=OPERATOR)
        assert refused.status_code == 422
        assert "shop.test" in refused.json()["detail"]

        assert client.post("/api/domains", json={"domain": TARGET}, headers=ADMIN).status_code == 201
        started = client.post(f"/api/configs/{config_id}/jobs", headers=OPERATOR)
        assert started.status_code == 202
        assert wait_for_job(client, started.json()["job_id"])["status"] == "completed"
