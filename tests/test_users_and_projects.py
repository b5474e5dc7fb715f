from conftest import DOMAIN, auth_header, token_for


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["status"] == "ok"


def test_register_creates_a_student(client, db):
    r = client.post("/auth/register", json={
        "name": "New Student",
        "email": f"New.Student{DOMAIN}",
        "password": "secret123",
        "semester": 5,
    })
    assert r.status_code == 201, r.text
    body = r.json()
    assert body["role"] == "STUDENT"
    assert body["email"] == f"new.student{DOMAIN}"
    assert body["department"] == "Unassigned"
    assert "hashedPassword" not in body

    stored = db.users.find_one({"email": f"new.student{DOMAIN}"})
    assert stored["hashedPassword"] != "secret123"


def test_register_enforces_domain_and_uniqueness(client, seed):
    r = client.post("/auth/register", json={"name": "X", "email": "x@gmail.com", "password": "secret123"})
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "VALIDATION"

    r = client.post("/auth/register", json={"name": "Sam", "email": f"sam.student{DOMAIN}", "password": "secret123"})
    assert r.status_code == 409
    assert r.json()["error"]["code"] == "CONFLICT"

    r = client.post("/auth/register", json={"name": "Y", "email": f"y{DOMAIN}", "password": "123"})
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "VALIDATION"


def test_me_requires_a_valid_token(client, seed):
    r = client.get("/users/me")
    assert r.status_code == 401
    assert r.json()["error"]["code"] == "UNAUTHENTICATED"

    r = client.get("/users/me", headers=auth_header("not-a-jwt"))
    assert r.status_code == 401
    assert r.json()["error"]["code"] == "TOKEN_EXPIRED"

    r = client.get("/users/me", headers=auth_header(token_for(f"ghost{DOMAIN}", "STUDENT")))
    assert r.status_code == 401

    r = client.get("/users/me", headers=seed.student_h)
    assert r.status_code == 200
    assert r.json()["id"] == seed.student


def test_unknown_route_uses_error_envelope(client):
    r = client.get("/nope")
    assert r.status_code == 404
    assert r.json()["error"]["code"] == "NOT_FOUND"


def test_mentor_listing(client, seed, make_user):
    make_user("Zed Mentor", "MENTOR", capacity=3, current_load=1, accepting=False)

    r = client.get("/mentors", headers=seed.student_h)
    assert r.status_code == 200
    mentors = {m["name"]: m for m in r.json()}
    assert len(mentors) == 5
    assert mentors["Zed Mentor"]["remainingSlots"] == 2
    assert mentors["Zed Mentor"]["acceptingRequests"] is False
    assert mentors["Arun Mentor"]["specialization"] == ["ml"]


def test_promotion_to_mentor_opens_one_profile(client, seed, db):
    url = f"/admin/users/{seed.student2}/role"
    r = client.patch(url, headers=seed.admin_h, json={"role": "MENTOR"})
    assert r.status_code == 200, r.text
    assert r.json()["message"] == "Role updated from STUDENT to MENTOR"
    assert r.json()["user"]["role"] == "MENTOR"

    profile = db.mentor_profiles.find_one({"userId": seed.student2})
    assert profile["capacity"] == 10
    assert profile["currentLoad"] == 0
    assert profile["acceptingRequests"] is True

    client.patch(url, headers=seed.admin_h, json={"role": "STUDENT"})
    client.patch(url, headers=seed.admin_h, json={"role": "MENTOR"})
    assert db.mentor_profiles.count_documents({"userId": seed.student2}) == 1


def test_role_change_validation(client, seed):
    r = client.patch(f"/admin/users/{seed.student}/role", headers=seed.admin_h, json={"role": "DEAN"})
    assert r.status_code == 400

    r = client.patch("/admin/users/0123456789abcdef01234567/role", headers=seed.admin_h, json={"role": "MENTOR"})
    assert r.status_code == 404

    r = client.patch(f"/admin/users/{seed.student}/role", headers=seed.mentor_a_h, json={"role": "ADMIN"})
    assert r.status_code == 403


def test_admin_updates_mentor_profile(client, seed):
    r = client.patch(f"/admin/mentor-profiles/{seed.mentor_a}", headers=seed.admin_h,
                     json={"capacity": 2, "acceptingRequests": False})
    assert r.status_code == 200
    profile = r.json()["profile"]
    assert profile["capacity"] == 2
    assert profile["acceptingRequests"] is False
    assert profile["specializationTags"] == ["ml"]

    r = client.patch(f"/admin/mentor-profiles/{seed.student}", headers=seed.admin_h, json={"capacity": 2})
    assert r.status_code == 404


def test_admin_lists_users_without_password_hashes(client, seed):
    r = client.get("/admin/users", headers=seed.admin_h)
    assert r.status_code == 200
    assert len(r.json()) == 8
    assert all("hashedPassword" not in u for u in r.json())


def test_project_visibility_follows_membership(client, seed, accepted_project):
    assert [p["id"] for p in client.get("/projects", headers=seed.student_h).json()] == [accepted_project]
    assert [p["id"] for p in client.get("/projects", headers=seed.mentor_a_h).json()] == [accepted_project]
    assert client.get("/projects", headers=seed.student2_h).json() == []
    assert len(client.get("/projects", headers=seed.admin_h).json()) == 1

    r = client.get(f"/projects/{accepted_project}", headers=seed.student_h)
    assert r.status_code == 200
    members = {m["name"]: m["memberRole"] for m in r.json()["members"]}
    assert members == {"Arun Mentor": "MENTOR", "Sam Student": "STUDENT"}

    assert client.get(f"/projects/{accepted_project}", headers=seed.mentor_b_h).status_code == 403
    assert client.get("/projects/0123456789abcdef01234567", headers=seed.admin_h).status_code == 404


def test_project_activity_log(client, seed, accepted_project):
    r = client.get(f"/projects/{accepted_project}/activity", headers=seed.mentor_a_h)
    assert r.status_code == 200
    assert [entry["actionType"] for entry in r.json()] == ["MENTOR_ACCEPTED"]


def test_startup_admin_seeding_is_idempotent(db, monkeypatch):
    import database

    monkeypatch.setenv("ADMIN_EMAIL", f"Root.Admin{DOMAIN}")
    monkeypatch.setenv("ADMIN_PASSWORD", "Admin@123")

    first = database.create_admin_user(db)
    second = database.create_admin_user(db)
    assert first == second

    admin = db.users.find_one({"email": f"root.admin{DOMAIN}"})
    assert admin["role"] == "ADMIN"
    assert admin["hashedPassword"] != "Admin@123"


def test_admin_seeding_needs_credentials(db, monkeypatch):
    import database

    monkeypatch.delenv("ADMIN_EMAIL", raising=False)
    monkeypatch.delenv("ADMIN_PASSWORD", raising=False)
    assert database.create_admin_user(db) is None
    assert db.users.count_documents({}) == 0
