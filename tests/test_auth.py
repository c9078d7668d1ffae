import jwt


def _tamper_token(token: str) -> str:
    # flip the first signature character; the last one can carry only padding bits
    header, payload, sig = token.split(".")
    first = "A" if sig[0] != "A" else "B"
    return ".".join((header, payload, first + sig[1:]))


REGISTRATION = {
    "firstName": "Sana",
    "lastName": "Malik",
    "email": "Sana.Malik@example.com",
    "password": "Fizz!Bomb9",
    "phone": "03211234567",
}


def test_register_then_login(client):
    r = client.post("/api/auth/register", json=REGISTRATION)
    assert r.status_code == 201
    body = r.get_json()
    assert body["token_type"] == "Bearer"
    assert body["user"]["email"] == "sana.malik@example.com"
    assert body["user"]["role"] == "customer"

    r = client.post("/api/auth/login", json={"email": "sana.malik@example.com", "password": "Fizz!Bomb9"})
    assert r.status_code == 200
    token = r.get_json()["access_token"]
    me = client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert me.status_code == 200
    assert me.get_json()["user"]["first_name"] == "Sana"


def test_duplicate_registration_conflicts(client):
    assert client.post("/api/auth/register", json=REGISTRATION).status_code == 201
    r = client.post("/api/auth/register", json=dict(REGISTRATION, email="sana.malik@EXAMPLE.com"))
    assert r.status_code == 409
    assert r.get_json()["error"] == "User with this email already exists"


def test_registration_validation(client):
    r = client.post("/api/auth/register", json=dict(REGISTRATION, password="weakpass", email="nope"))
    assert r.status_code == 400
    errors = r.get_json()["errors"]
    assert "Please provide a valid email" in errors
    assert "Password must contain at least one uppercase letter, one number, one special character" in errors


def test_invalid_login_is_rejected(client, customer_user):
    r = client.post("/api/auth/login", json={"email": customer_user["email"], "password": "wrongpass"})
    assert r.status_code == 401
    assert r.get_json()["error"] == "Invalid credentials"
    r = client.post("/api/auth/login", json={"email": "ghost@example.com", "password": "Whatever!1"})
    assert r.status_code == 401
    assert client.post("/api/auth/login", json={}).status_code == 400


def test_tampered_token_is_rejected(client, customer_headers):
    token = customer_headers["Authorization"].split(" ", 1)[1]
    r = client.get("/api/auth/me", headers={"Authorization": f"Bearer {_tamper_token(token)}"})
    assert r.status_code == 401
    assert r.get_json()["error"].startswith("Invalid token")


def test_token_signed_with_other_secret_is_rejected(client, customer_user):
    forged = jwt.encode({"sub": str(customer_user["user_id"]), "role": "admin"}, "not-the-secret", algorithm="HS256")
    r = client.get("/api/inventory/summary", headers={"Authorization": f"Bearer {forged}"})
    assert r.status_code == 401


def test_missing_header(client):
    r = client.get("/api/auth/me")
    assert r.status_code == 401
    assert r.get_json()["error"] == "Missing or invalid Authorization header"


def test_role_separation(client, customer_headers, admin_headers):
    for method, path in (
        ("get", "/api/inventory/summary"),
        ("get", "/api/inventory/alerts"),
        ("post", "/api/inventory/add"),
        ("get", "/api/orders/admin/all"),
        ("post", "/api/products"),
    ):
        r = getattr(client, method)(path, headers=customer_headers, json={} if method == "post" else None)
        assert r.status_code == 403, path
    assert client.get("/api/inventory/summary", headers=admin_headers).status_code == 200
