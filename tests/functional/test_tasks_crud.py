async def _auth_headers(aclient, username="ann"):
    resp = await aclient.post(
        "/auth/register",
        json={"username": username, "email": f"{username}@example.com", "password": "12345678"},
    )
    return {"Authorization": f"Bearer {resp.json()['token']}"}, resp.json()["user"]


async def test_create_read_update_delete_task(aclient):
    headers, user = await _auth_headers(aclient)

    # --- create ----------------------------------------------------
    create_payload = {
        "title": "  write tests  ",
        "description": "unit + functional + locust",
        "due_date": "2030-12-31",
        "category": "Urgent",
    }
    r_create = await aclient.post("/todos", json=create_payload, headers=headers)
    assert r_create.status_code == 201
    task = r_create.json()
    task_id = task["id"]
    assert task["title"] == "write tests"
    assert task["completed"] is False
    assert task["owner_id"] == user["id"]

    # --- read list: поля совпадают, кроме присвоенных сервером ----------
    r_list = await aclient.get("/todos", headers=headers)
    assert r_list.status_code == 200
    listed = [t for t in r_list.json() if t["id"] == task_id]
    assert listed == [task]

    # --- update ----------------------------------------------------
    r_update = await aclient.patch(
        f"/todos/{task_id}",
        json={"title": "write more tests", "completed": True},
        headers=headers,
    )
    assert r_update.status_code == 200
    assert r_update.json()["title"] == "write more tests"
    assert r_update.json()["completed"] is True
    assert r_update.json()["category"] == "Urgent"

    # --- delete ----------------------------------------------------
    r_del = await aclient.delete(f"/todos/{task_id}", headers=headers)
    assert r_del.status_code == 200
    assert r_del.json()["id"] == task_id

    # проверяем, что задачи действительно нет
    r_list2 = await aclient.get("/todos", headers=headers)
    assert all(t["id"] != task_id for t in r_list2.json())
    assert (await aclient.delete(f"/todos/{task_id}", headers=headers)).status_code == 404


async def test_create_defaults(aclient):
    headers, _ = await _auth_headers(aclient)
    r = await aclient.post("/todos", json={"title": "minimal"}, headers=headers)
    assert r.status_code == 201
    data = r.json()
    assert data["category"] == "Non-Urgent"
    assert data["description"] is None
    assert data["due_date"] is None
    assert data["completed"] is False


async def test_create_ignores_client_owner(aclient):
    headers, user = await _auth_headers(aclient, "ann")
    _, other = await _auth_headers(aclient, "ben")
    r = await aclient.post(
        "/todos",
        json={"title": "sneaky", "owner_id": other["id"], "ownerId": other["id"], "userId": other["id"]},
        headers=headers,
    )
    assert r.status_code == 201
    assert r.json()["owner_id"] == user["id"]


async def test_create_validation(aclient):
    headers, _ = await _auth_headers(aclient)
    for payload in ({}, {"title": "   "}, {"title": "x", "category": "urgent-ish"}, {"title": "x" * 101}):
        r = await aclient.post("/todos", json=payload, headers=headers)
        assert r.status_code == 400, payload


async def test_create_task_unauthenticated(aclient):
    r = await aclient.post("/todos", json={"title": "t"})
    assert r.status_code == 401


async def test_list_is_scoped_to_owner(aclient):
    ann_headers, _ = await _auth_headers(aclient, "ann")
    ben_headers, _ = await _auth_headers(aclient, "ben")
    await aclient.post("/todos", json={"title": "ann-1"}, headers=ann_headers)
    await aclient.post("/todos", json={"title": "ann-2"}, headers=ann_headers)
    await aclient.post("/todos", json={"title": "ben-1"}, headers=ben_headers)

    ann_titles = {t["title"] for t in (await aclient.get("/todos", headers=ann_headers)).json()}
    assert ann_titles == {"ann-1", "ann-2"}

    # клиентский фильтр по владельцу игнорируется
    r = await aclient.get("/todos", params={"owner_id": "anything"}, headers=ben_headers)
    assert {t["title"] for t in r.json()} == {"ben-1"}
