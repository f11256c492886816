def test_root_and_health(client):
    assert client.get("/").get_json() == {"message": "Storefront API is running"}
    assert client.get("/health").get_json() == {"status": "ok"}


def test_security_headers(client):
    response = client.get("/health")

    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["X-Frame-Options"] == "DENY"
    assert "Referrer-Policy" in response.headers


def test_unknown_route_returns_json(client):
    response = client.get("/api/nothing-here")

    assert response.status_code == 404
    assert response.get_json() == {"message": "Route not found"}


def test_wrong_method_returns_json(client):
    response = client.patch("/health")

    assert response.status_code == 405
    assert response.get_json() == {"message": "Method not allowed"}


def test_indexes_are_created(db, app):
    assert "email_1" in db.users.index_information()
    assert "expires_at_1" in db.notifications.index_information()
