from conftest import bearer
from utils.pagination import pagination_meta


def test_pagination_meta():
    meta = pagination_meta(page=2, limit=10, total=25)
    assert meta == {
        "page": 2,
        "limit": 10,
        "total": 25,
        "totalPages": 3,
        "hasNextPage": True,
        "hasPrevPage": True,
        "nextPage": 3,
        "prevPage": 1,
    }


def test_pagination_meta_empty():
    meta = pagination_meta(page=1, limit=10, total=0)
    assert meta["totalPages"] == 0
    assert meta["hasNextPage"] is False
    assert meta["nextPage"] is None and meta["prevPage"] is None


def test_limit_bounds(client, admin_headers):
    assert client.get("/api/branches", headers=admin_headers, params={"limit": 100}).status_code == 200

    too_many = client.get("/api/branches", headers=admin_headers, params={"limit": 101})
    assert too_many.status_code == 400
    assert too_many.json()["errors"][0]["field"] == "limit"

    assert client.get("/api/branches", headers=admin_headers, params={"page": 0}).status_code == 400


def test_pages_and_sorting(client, admin_headers):
    for name in ("Alpha", "Charlie", "Bravo"):
        response = client.post("/api/branches", headers=admin_headers, json={
            "name": name,
            "location": "City",
            "address": f"{name} street",
            "phone": "+1 555 0111",
            "email": f"{name.lower()}@lab.example.com",
            "manager": "Manager",
        })
        assert response.status_code == 201

    first = client.get("/api/branches", headers=admin_headers,
                       params={"limit": 2, "sortBy": "name", "sortOrder": "asc"}).json()
    assert [b["name"] for b in first["data"]] == ["Alpha", "Bravo"]
    assert first["pagination"]["totalPages"] == 2
    assert first["pagination"]["nextPage"] == 2

    second = client.get("/api/branches", headers=admin_headers,
                        params={"page": 2, "limit": 2, "sortBy": "name", "sortOrder": "asc"}).json()
    assert [b["name"] for b in second["data"]] == ["Charlie"]
    assert second["pagination"]["hasNextPage"] is False


def test_unknown_sort_field_is_rejected(client, admin_headers):
    response = client.get("/api/branches", headers=admin_headers, params={"sortBy": "secret"})
    assert response.status_code == 400
    assert response.json()["field"] == "sortBy"
    assert response.json()["message"].startswith("Invalid sort field: secret")
