import pytest
from fastapi.testclient import TestClient

from server import create_app
from conftest import ARTICLE_HTML

@pytest.fixture
def client(config):
    with TestClient(create_app(config)) as c:
        yield c

def create(client, url="https://example.com/a", html=ARTICLE_HTML):
    return client.post("/api/articles", json={"html": html, "url": url})

def test_ping(client):
    response = client.get("/ping")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}

def test_create_and_get_article(client):
    response = create(client)
    assert response.status_code == 201
    article = response.json()["article"]
    assert article["title"] == "Hello"
    assert article["reading_time_minutes"] == 2
    assert "content_html" not in article

    detail = client.get(f"/api/articles/{article['id']}").json()["article"]
    assert "word" in detail["content_html"]
    assert detail["images"] == []

def test_create_failure_is_reported(client):
    response = create(client, url="https://example.com/s3",
                      html="<html><body><script>alert(1)</script></body></html>")
    assert response.status_code == 400
    assert response.json()["error"] == "Extraction"
    assert client.get("/api/articles").json()["pagination"]["total"] == 0

def test_create_too_large(config):
    config.max_html_size_mb = 0.001
    with TestClient(create_app(config)) as small:
        response = create(small, html="x" * 5000)
    assert response.status_code == 413
    assert response.json()["error"] == "HtmlTooLarge"

def test_create_validation(client):
    response = client.post("/api/articles", json={"url": "https://example.com/a"})
    assert response.status_code == 400
    assert response.json()["error"] == "Validation"

def test_list_parameters(client):
    create(client)
    body = client.get("/api/articles", params={"page": 1, "limit": 100, "sort_by": "title_asc"}).json()
    assert body["pagination"]["total"] == 1
    assert body["pagination"]["totalPages"] == 1
    for params in ({"limit": 0}, {"limit": 101}, {"page": 0}, {"sort_by": "random"}, {"search": "s" * 201}):
        response = client.get("/api/articles", params=params)
        assert response.status_code == 400, params
        assert response.json()["error"] == "Validation"

def test_update_and_delete(client):
    article_id = create(client).json()["article"]["id"]
    response = client.put(f"/api/articles/{article_id}", json={"is_favorite": True, "title": "Renamed"})
    assert response.status_code == 200
    assert response.json()["article"]["is_favorite"] is True
    assert response.json()["article"]["title"] == "Renamed"

    response = client.put(f"/api/articles/{article_id}", json={"content_html": "<p>x</p>"})
    assert response.status_code == 400

    assert client.delete(f"/api/articles/{article_id}").status_code == 200
    response = client.get(f"/api/articles/{article_id}")
    assert response.status_code == 404
    assert response.json()["error"] == "NotFound"
    assert client.delete(f"/api/articles/{article_id}").status_code == 404

def test_generate_download_delete_epub(client):
    article_id = create(client).json()["article"]["id"]
    response = client.post("/api/epub/generate", json={"articleIds": [article_id], "title": "Weekly"})
    assert response.status_code == 201
    export = response.json()["export"]
    assert export["article_count"] == 1

    listed = client.get("/api/epub/exports").json()["exports"]
    assert [e["id"] for e in listed] == [export["id"]]

    download = client.get(f"/api/epub/exports/{export['id']}/download")
    assert download.status_code == 200
    assert download.headers["content-type"] == "application/epub+zip"
    assert download.content[:2] == b"PK"

    assert client.delete(f"/api/epub/exports/{export['id']}").status_code == 200
    assert client.get(f"/api/epub/exports/{export['id']}").status_code == 404

@pytest.mark.parametrize("payload", [
    {"articleIds": []},
    {"articleIds": list(range(1, 102))},
    {"articleIds": [0]},
    {"articleIds": [1], "title": ""},
    {"articleIds": [1], "author": "a" * 101},
])
def test_generate_validation(client, payload):
    response = client.post("/api/epub/generate", json=payload)
    assert response.status_code == 400
    assert response.json()["error"] == "Validation"

def test_generate_without_articles(client):
    response = client.post("/api/epub/generate", json={"articleIds": [77]})
    assert response.status_code == 400
    assert response.json()["error"] == "NoArticles"

def test_settings_masked(client):
    response = client.put("/api/settings", json={
        "kindleEmail": "me@kindle.com",
        "smtpHost": "smtp.example.com",
        "smtpUser": "me@example.com",
        "smtpPassword": "hunter2",
    })
    assert response.status_code == 200
    settings = client.get("/api/settings").json()["settings"]
    assert settings["SMTP_PASSWORD"] == "********"
    assert settings["SMTP_PORT"] == "587"
    assert settings["FROM_EMAIL"] == "me@example.com"

def test_stats(client):
    create(client)
    stats = client.get("/api/articles/stats").json()["stats"]
    assert stats["total_articles"] == 1
    assert client.get("/api/articles/stats").json()["popular_tags"] == []

def test_create_with_tags_and_filter(client):
    article = client.post("/api/articles", json={"html": ARTICLE_HTML, "url": "https://example.com/t",
                                                 "tags": ["Python", "news"]}).json()["article"]
    assert article["tags"] == ["news", "python"]
    create(client, url="https://example.com/untagged")

    body = client.get("/api/articles", params={"tag": "python"}).json()
    assert [a["id"] for a in body["articles"]] == [article["id"]]
    assert body["pagination"]["total"] == 1

def test_article_tag_routes(client):
    article_id = create(client).json()["article"]["id"]
    response = client.post(f"/api/articles/{article_id}/tags", json={"tags": ["Later", "work"]})
    assert response.status_code == 200
    tags = response.json()["tags"]
    assert [t["name"] for t in tags] == ["later", "work"]

    assert client.post(f"/api/articles/{article_id}/tags", json={"tags": []}).status_code == 400
    assert client.post("/api/articles/9999/tags", json={"tags": ["x"]}).status_code == 404

    later_id = tags[0]["id"]
    assert client.delete(f"/api/articles/{article_id}/tags/{later_id}").status_code == 200
    assert client.delete(f"/api/articles/{article_id}/tags/{later_id}").status_code == 404
    assert client.get(f"/api/articles/{article_id}").json()["article"]["tags"] == ["work"]

def test_tag_routes(client):
    response = client.post("/api/tags", json={"name": "Reading", "color": "#112233"})
    assert response.status_code == 201
    tag = response.json()["tag"]
    assert tag["name"] == "reading"
    assert tag["color"] == "#112233"
    assert client.post("/api/tags", json={"name": "reading"}).status_code == 409
    assert client.post("/api/tags", json={"name": "x", "color": "red"}).status_code == 400

    renamed = client.put(f"/api/tags/{tag['id']}", json={"name": "Queue"})
    assert renamed.json()["tag"]["name"] == "queue"
    assert client.put(f"/api/tags/{tag['id']}", json={"bogus": 1}).status_code == 400
    assert client.put("/api/tags/9999", json={"name": "x"}).status_code == 404

    article_id = create(client).json()["article"]["id"]
    client.post(f"/api/articles/{article_id}/tags", json={"tags": ["queue"]})
    listed = client.get("/api/tags").json()["tags"]
    assert listed[0]["name"] == "queue"
    assert listed[0]["article_count"] == 1

    body = client.get(f"/api/tags/{tag['id']}/articles").json()
    assert body["tag"]["name"] == "queue"
    assert [a["id"] for a in body["articles"]] == [article_id]
    assert client.get("/api/tags/9999/articles").status_code == 404

    assert client.delete(f"/api/tags/{tag['id']}").status_code == 200
    assert client.delete(f"/api/tags/{tag['id']}").status_code == 404
    assert client.get(f"/api/articles/{article_id}").json()["article"]["tags"] == []
