"""Tests for the prototype glue: details, config, homepage link and CLI exits."""

from __future__ import annotations

from pathlib import Path

import pytest

import static_copy
from static_copy import (
    Config,
    EnvironmentCheckError,
    add_link_to_homepage,
    check_project_root,
    get_or_request_details,
    load_config,
    main,
)


# ---------------------------------------------------------------------------
# get_or_request_details
# ---------------------------------------------------------------------------

def test_details_from_arguments() -> None:
    details = get_or_request_details(["copy", "https://example.com", "user", "pass"])
    assert (details.name, details.url, details.username, details.password) == (
        "copy",
        "https://example.com",
        "user",
        "pass",
    )


def test_details_without_credentials() -> None:
    details = get_or_request_details(["copy", "https://example.com", None, None])
    assert details.username is None
    assert details.password is None


def test_details_are_prompted_for(monkeypatch) -> None:
    answers = iter(["copy", "https://example.com", ""])
    monkeypatch.setattr("builtins.input", lambda prompt: next(answers))
    monkeypatch.setattr(static_copy.getpass, "getpass", lambda prompt: "hidden")

    details = get_or_request_details([None, None, None, None])

    assert details.name == "copy"
    assert details.username is None
    assert details.password == "hidden"


@pytest.mark.parametrize(
    "values",
    [
        ["../escape", "https://example.com"],
        ["copy", None],
        ["copy", "example.com"],
    ],
)
def test_invalid_details(values) -> None:
    with pytest.raises(ValueError):
        get_or_request_details(values)


# ---------------------------------------------------------------------------
# project root / homepage link
# ---------------------------------------------------------------------------

def test_check_project_root(tmp_path: Path) -> None:
    with pytest.raises(EnvironmentCheckError):
        check_project_root(tmp_path, Config())
    (tmp_path / "app" / "assets").mkdir(parents=True)
    check_project_root(tmp_path, Config())


def test_link_goes_before_first_endblock(tmp_path: Path) -> None:
    homepage = tmp_path / "index.html"
    homepage.write_text("{% block a %}x{%endblock  %}{% block b %}y{% endblock %}", encoding="utf-8")

    add_link_to_homepage(homepage, "/public/copy", "https://example.com")

    assert homepage.read_text(encoding="utf-8") == (
        '{% block a %}x<p class="govuk-body"><a href="/public/copy">Downloaded copy of '
        'https://example.com.</a></p>{%endblock  %}{% block b %}y{% endblock %}'
    )


def test_link_needs_a_marker(tmp_path: Path) -> None:
    homepage = tmp_path / "index.html"
    homepage.write_text("<h1>no blocks</h1>", encoding="utf-8")
    with pytest.raises(ValueError):
        add_link_to_homepage(homepage, "/public/copy", "https://example.com")


# ---------------------------------------------------------------------------
# load_config
# ---------------------------------------------------------------------------

def test_load_config_applies_defaults(tmp_path: Path) -> None:
    path = tmp_path / "static-copy.yaml"
    path.write_text("tries: 2\npublic_prefix: /mirrors/\nprobe: false\n", encoding="utf-8")

    config = load_config(path)

    assert config.tries == 2
    assert config.public_prefix == "/mirrors"
    assert config.probe is False
    assert config.fetch_command == "wget"
    assert config.partial_exit_code == 3


def test_load_config_empty_file(tmp_path: Path) -> None:
    path = tmp_path / "static-copy.yaml"
    path.write_text("", encoding="utf-8")
    assert load_config(path) == Config()


def test_load_config_rejects_non_mapping(tmp_path: Path) -> None:
    path = tmp_path / "static-copy.yaml"
    path.write_text("- a\n- b\n", encoding="utf-8")
    with pytest.raises(ValueError):
        load_config(path)


# ---------------------------------------------------------------------------
# main
# ---------------------------------------------------------------------------

def test_main_outside_prototype_exits_10(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    with pytest.raises(SystemExit) as excinfo:
        main(["copy", "https://example.com"])
    assert excinfo.value.code == static_copy.ENVIRONMENT_EXIT_CODE


def test_main_missing_config_file(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    with pytest.raises(SystemExit) as excinfo:
        main(["--config", "missing.yaml", "copy", "https://example.com"])
    assert "config file not found" in str(excinfo.value.code)


def test_main_runs_copy(tmp_path: Path, monkeypatch) -> None:
    (tmp_path / "app" / "assets").mkdir(parents=True)
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("LOG_EVERYTHING", "true")
    seen = {}

    async def fake_run(config, details, cwd):
        seen.update(config=config, details=details, cwd=cwd)
        return 0

    monkeypatch.setattr(static_copy, "run", fake_run)
    with pytest.raises(SystemExit) as excinfo:
        main(["copy", "https://example.com", "user"])

    assert excinfo.value.code == 0
    assert seen["config"].log_everything is True
    assert seen["details"].username == "user"
    assert seen["cwd"].resolve() == tmp_path.resolve()
