import yaml
from fastapi.testclient import TestClient

from policy_groups import PolicyNames
from server import app

client = TestClient(app)

CONTENT = yaml.safe_dump({
    "proxies": [
        {"name": "HK-1", "type": "ss", "server": "a.example.com", "port": 1},
        {"name": "HK-2", "type": "ss", "server": "b.example.com", "port": 1},
        {"name": "US-1", "type": "ss", "server": "c.example.com", "port": 1},
    ]
}, allow_unicode=True)


def group_names(groups):
    return [group["name"] for group in groups]


def test_flags_endpoint():
    response = client.get("/api/flags")
    assert response.status_code == 200
    data = response.json()
    assert "threshold" in data["arguments"]
    assert data["defaults"]["country_threshold"] == 0


def test_countries_endpoint():
    data = client.get("/api/countries").json()
    assert data["countries"][0]["key"] == "香港"
    assert data["countries"][0]["weight"] == 10


def test_convert_with_query_flags():
    response = client.post("/api/convert?threshold=2&landing=true", json={"content": CONTENT})
    assert response.status_code == 200
    names = group_names(response.json()["proxy-groups"])
    assert "香港节点" in names
    assert "美国节点" not in names
    assert PolicyNames.LANDING in names


def test_convert_rejects_unparseable_content():
    response = client.post("/api/convert", json={"content": "hello"})
    assert response.status_code == 400


def test_convert_upload():
    response = client.post(
        "/api/convert/upload?regex=true",
        files={"file": ("sub.yaml", CONTENT.encode("utf-8"), "application/yaml")},
    )
    assert response.status_code == 200
    groups = {group["name"]: group for group in response.json()["proxy-groups"]}
    assert groups["香港节点"]["include-all"] is True


def test_groups_endpoint():
    response = client.post("/api/groups?loadbalance=true", json={"proxies": [{"name": "HK-1"}]})
    assert response.status_code == 200
    groups = {group["name"]: group for group in response.json()["proxy-groups"]}
    assert groups["香港节点"]["type"] == "load-balance"


def test_groups_endpoint_without_proxies():
    response = client.post("/api/groups", json={})
    assert response.status_code == 200
    assert response.json()["proxy-groups"][-1]["name"] == PolicyNames.GLOBAL


def test_convert_rejects_scalar_proxies():
    response = client.post("/api/convert", json={"content": "proxies: 5"})
    assert response.status_code == 400
