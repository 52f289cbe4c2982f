from config import get_settings, normalize_database_url


def test_normalize_database_url_for_hosted_postgres() -> None:
    url = normalize_database_url("postgres://user:pw@db.example.com:5432/admissions")

    assert url == "postgresql+psycopg2://user:pw@db.example.com:5432/admissions?sslmode=require"


def test_normalize_database_url_keeps_local_and_sqlite_urls() -> None:
    assert normalize_database_url("postgresql://u:p@localhost/db") == "postgresql+psycopg2://u:p@localhost/db"
    assert normalize_database_url("'sqlite:///admissions.db'") == "sqlite:///admissions.db"


def test_settings_read_environment(monkeypatch) -> None:
    monkeypatch.setenv("ADMISSIONS_MIN_CREDITS_FLOOR", "10")
    monkeypatch.setenv("ADMISSIONS_DEFAULT_GRADE_SCALE", " spm ")
    monkeypatch.setenv("ADMISSIONS_LOG_LEVEL", "debug")
    monkeypatch.delenv("DATABASE_URL", raising=False)

    settings = get_settings()

    assert settings.database_url is None
    assert settings.min_credits_floor == 10
    assert settings.default_grade_scale == "SPM"
    assert settings.log_level == "DEBUG"
