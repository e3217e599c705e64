from rangleela import config
from rangleela.config import Settings, parse_email_list
from rangleela.helpers import build_pagination, check_length, pagination_args, to_object_id


def test_settings_from_env(monkeypatch):
    monkeypatch.setattr(config, "load_dotenv", lambda: None)
    monkeypatch.setenv("FRONTEND_URL", "https://rangleela.store")
    monkeypatch.setenv("CORS_ALLOWED_ORIGINS", "https://admin.rangleela.store, ")
    monkeypatch.setenv("ADMIN_EMAILS", "Owner@RangLeela.store, ops@rangleela.store")
    monkeypatch.setenv("APP_ENV", "Production")
    monkeypatch.setenv("GATEWAY_TIMEOUT_SECONDS", "not-a-number")
    monkeypatch.delenv("FRONTEND_URL2", raising=False)

    settings = Settings.from_env()

    assert settings.cors_origins == ["https://rangleela.store", "https://admin.rangleela.store"]
    assert settings.admin_emails == frozenset({"owner@rangleela.store", "ops@rangleela.store"})
    assert settings.is_production
    assert settings.gateway_timeout_seconds == 10


def test_parse_email_list_handles_blanks():
    assert parse_email_list(None) == frozenset()
    assert parse_email_list(" , a@b.co ,") == frozenset({"a@b.co"})


def test_check_length_messages():
    errors = []
    assert check_length(errors, "name", "  A  ", 2, 50, "Name") == "A"
    check_length(errors, "notes", "x" * 501, 0, 500, "Notes")
    assert errors == [
        {"field": "name", "message": "Name must be 2-50 characters"},
        {"field": "notes", "message": "Notes must be at most 500 characters"},
    ]


def test_pagination_args_bounds():
    assert pagination_args({}, default_limit=12) == (1, 12)
    assert pagination_args({"page": "3", "limit": "500"}) == (3, 100)
    assert pagination_args({"page": "-2", "limit": "abc"}, default_limit=5) == (1, 5)
    assert build_pagination(2, 10, 25) == {"page": 2, "limit": 10, "total": 25, "pages": 3}


def test_to_object_id_rejects_garbage():
    assert to_object_id("not-an-id") is None
    assert to_object_id(None) is None
    assert str(to_object_id("64b7f0c2a1b2c3d4e5f60718")) == "64b7f0c2a1b2c3d4e5f60718"
