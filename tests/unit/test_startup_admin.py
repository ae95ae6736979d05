import main


def _count_users():
    db = main.SessionLocal()
    try:
        return db.query(main.User).count(), db.query(main.User).filter(main.User.role == "admin").count()
    finally:
        db.close()


def test_startup_creates_admin_once(monkeypatch):
    monkeypatch.setenv("ADMIN_USERNAME", "root")
    monkeypatch.setenv("ADMIN_EMAIL", "Root@Example.com")
    monkeypatch.setenv("ADMIN_PASSWORD", "rootpass1")

    main.startup()
    total, admins = _count_users()
    assert total == 1
    assert admins == 1

    # повторный запуск не создаёт дубликат
    main.startup()
    assert _count_users() == (1, 1)

    db = main.SessionLocal()
    try:
        admin = db.query(main.User).filter(main.User.username == "root").first()
        assert admin.email == "root@example.com"
        assert main.verify_password("rootpass1", admin.hashed_password)
    finally:
        db.close()


def test_bootstrap_disabled_by_empty_password(monkeypatch, db_session):
    monkeypatch.setenv("ADMIN_PASSWORD", "")
    assert main.bootstrap_admin(db_session) is None
    assert db_session.query(main.User).count() == 0


def test_bootstrap_skips_when_email_taken(monkeypatch, db_session, make_user):
    make_user("someone", email="admin@example.com")
    monkeypatch.setenv("ADMIN_USERNAME", "admin")
    monkeypatch.setenv("ADMIN_EMAIL", "admin@example.com")
    monkeypatch.setenv("ADMIN_PASSWORD", "admin")
    assert main.bootstrap_admin(db_session) is None
