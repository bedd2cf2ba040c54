from __future__ import annotations

from conftest import seed_image, seed_sections


def test_create_project_starts_uploaded(client, auth_headers, user, store):
    resp = client.post(
        "/api/projects",
        json={"productName": "Thermos", "productDesc": "Keeps tea hot"},
        headers=auth_headers,
    )

    assert resp.status_code == 201
    body = resp.json()
    assert body["status"] == "uploaded"
    assert body["user_id"] == user.id
    assert store.projects[body["id"]]["product_desc"] == "Keeps tea hot"


def test_create_project_requires_name(client, auth_headers):
    resp = client.post("/api/projects", json={"productName": "   "}, headers=auth_headers)
    assert resp.status_code == 400


def test_list_only_returns_callers_projects(client, auth_headers, other_headers, project):
    mine = client.get("/api/projects", headers=auth_headers).json()
    theirs = client.get("/api/projects", headers=other_headers).json()
    assert [p["id"] for p in mine] == [project.id]
    assert theirs == []


def test_project_detail_bundles_related_records(client, auth_headers, store, objects, project):
    img = seed_image(store, objects, project.id, "product_input")
    seed_sections(store, project.id, ["Hero"])
    store.texts[999] = {"id": 999, "project_id": project.id, "text": "rival copy", "analysis": '["cheap"]'}

    resp = client.get(f"/api/projects/{project.id}", headers=auth_headers)

    assert resp.status_code == 200
    body = resp.json()
    assert body["product_name"] == "Cloud Runner"
    assert body["images"][0]["url"] == objects.url_for(img.r2_key)
    assert [s["title"] for s in body["sections"]] == ["Hero"]
    assert body["competitorText"][0]["key_points"] == ["cheap"]


def test_project_ownership_and_missing(client, auth_headers, other_headers, project):
    assert client.get(f"/api/projects/{project.id}", headers=other_headers).status_code == 403
    assert client.get("/api/projects/4242", headers=auth_headers).status_code == 404
    assert client.delete(f"/api/projects/{project.id}", headers=other_headers).status_code == 403


def test_update_project_fields_and_status(client, auth_headers, store, project):
    resp = client.put(
        f"/api/projects/{project.id}",
        json={"productName": "Cloud Runner 2", "status": "scripted"},
        headers=auth_headers,
    )
    assert resp.status_code == 200
    assert resp.json()["product_name"] == "Cloud Runner 2"
    assert store.projects[project.id]["status"] == "scripted"
    assert store.projects[project.id]["product_desc"] == "Lightweight running shoe"


def test_update_project_rejects_unknown_status(client, auth_headers, project):
    resp = client.put(f"/api/projects/{project.id}", json={"status": "shipped"}, headers=auth_headers)
    assert resp.status_code == 400


def test_delete_project(client, auth_headers, store, project):
    resp = client.delete(f"/api/projects/{project.id}", headers=auth_headers)
    assert resp.json() == {"success": True}
    assert project.id not in store.projects


def test_remote_store_failure_maps_to_bad_gateway(client, auth_headers, store, project):
    store.fail_on.add("update_project")
    resp = client.put(f"/api/projects/{project.id}", json={"status": "scripted"}, headers=auth_headers)
    assert resp.status_code == 502
    assert resp.json() == {"detail": "update_project failed"}
