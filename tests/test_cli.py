"""Tests for the pcpctl CLI."""
from __future__ import annotations

import json
from pathlib import Path

import pytest
import yaml
from typer.testing import CliRunner, Result

from conftest import FakeProbe, FakeRuntime
from pcpctl import __version__, cli
from pcpctl.cli import app, manage_app
from pcpctl.state.envfile import read_env

runner = CliRunner()

PS_RUNNING = "app   Up 3 minutes\npostgres   Up 3 minutes\n"


def _extract_json(output: str) -> dict[str, object]:
    """Extract the first JSON object embedded in *output*."""
    start = output.find("{")
    end = output.rfind("}")
    assert start != -1 and end != -1, f"No JSON payload found in output: {output}"
    return json.loads(output[start : end + 1])


def _prepare_environment(
    tmp_path: Path,
    *,
    config_overrides: dict[str, object] | None = None,
) -> dict[str, str]:
    config: dict[str, object] = {
        "instances_dir": str(tmp_path / "instances"),
        "logs_dir": str(tmp_path / "logs"),
        "runtime_dir": str(tmp_path / "run"),
        "templates_dir": str(tmp_path / "templates"),
        "lock_timeout": 2,
        "backups": {"root": str(tmp_path / "backups")},
    }
    if config_overrides:
        config.update(config_overrides)
    config_path = tmp_path / "config.yml"
    config_path.write_text(yaml.safe_dump(config), encoding="utf-8")
    return {"PCPCTL_CONFIG_FILE": str(config_path)}


@pytest.fixture
def fake_runtime(monkeypatch: pytest.MonkeyPatch) -> FakeRuntime:
    """Route every runtime call made by the CLI to a scripted fake."""
    runtime = FakeRuntime(ps_output=PS_RUNNING)
    monkeypatch.setattr(cli, "ComposeProvider", lambda **kwargs: runtime)
    monkeypatch.setattr(cli, "PortProbe", lambda runtime, host="0.0.0.0": FakeProbe())
    return runtime


@pytest.fixture
def env(tmp_path: Path, fake_runtime: FakeRuntime) -> dict[str, str]:
    return _prepare_environment(tmp_path)


def _deploy(env: dict[str, str], name: str, *extra: str) -> Result:
    return runner.invoke(
        app,
        [
            "deploy",
            "create",
            "--name",
            name,
            "--company",
            "Acme Corp",
            "--admin-email",
            f"ops@{name}.test",
            "--database-name",
            f"chat_{name}",
            *extra,
        ],
        env=env,
    )


def _last_operation(tmp_path: Path) -> dict[str, object]:
    lines = (tmp_path / "logs" / "operations.jsonl").read_text(encoding="utf-8").splitlines()
    return json.loads(lines[-1])


def test_version_option_outputs_package_version(env: dict[str, str]) -> None:
    """``--version`` prints the package version."""
    result = runner.invoke(app, ["--version"], env=env)

    assert result.exit_code == 0
    assert __version__ in result.stdout


def test_invocation_without_subcommand_shows_help(env: dict[str, str]) -> None:
    """Calling the CLI without a subcommand shows help output."""
    result = runner.invoke(app, env=env)

    assert result.exit_code == 0
    assert "PowerChat Plus multi-instance deployment CLI" in result.stdout


def test_configuration_errors_exit_one(tmp_path: Path, fake_runtime: FakeRuntime) -> None:
    """Invalid configuration is reported without a traceback."""
    env = _prepare_environment(tmp_path, config_overrides={"ports": {"app_base": 0}})

    result = runner.invoke(app, ["manage", "list"], env=env)

    assert result.exit_code == 1
    assert "Configuration error" in result.stdout


def test_deploy_create_registers_and_starts(
    tmp_path: Path, env: dict[str, str], fake_runtime: FakeRuntime
) -> None:
    """Deploying allocates ports, writes the record and starts containers."""
    result = _deploy(env, "acme")

    assert result.exit_code == 0, result.stdout
    assert "deployed at http://localhost:9000" in result.stdout
    values = read_env(tmp_path / "instances" / "acme" / ".env")
    assert values["APP_PORT"] == "9000"
    assert values["DB_PORT"] == "5432"
    assert values["POSTGRES_DB"] == "chat_acme"
    assert values["COMPANY_NAME"] == "Acme Corp"
    assert fake_runtime.operations() == ["build", "up"]
    record = _last_operation(tmp_path)
    assert record["command"] == "deploy create"
    assert record["result"]["status"] == "success"  # type: ignore[index]


def test_second_deploy_gets_next_ports(tmp_path: Path, env: dict[str, str]) -> None:
    """Ports held by existing instances are skipped."""
    assert _deploy(env, "acme", "--no-start").exit_code == 0

    result = _deploy(env, "beta", "--no-start")

    assert result.exit_code == 0, result.stdout
    values = read_env(tmp_path / "instances" / "beta" / ".env")
    assert (values["APP_PORT"], values["DB_PORT"]) == ("9001", "5433")


def test_deploy_no_start_skips_runtime(env: dict[str, str], fake_runtime: FakeRuntime) -> None:
    """``--no-start`` only registers the instance."""
    result = _deploy(env, "acme", "--no-start")

    assert result.exit_code == 0
    assert "registered (not started)" in result.stdout
    assert fake_runtime.calls == []


def test_deploy_interactive_prompts_for_details(tmp_path: Path, env: dict[str, str]) -> None:
    """Running ``deploy`` without a subcommand prompts for every value."""
    result = runner.invoke(
        app,
        ["deploy"],
        input="Bad Name\nacme\nAcme\nnot-an-email\nops@acme.test\n\n",
        env=env,
    )

    assert result.exit_code == 0, result.stdout
    assert "Invalid email address" in result.stdout
    values = read_env(tmp_path / "instances" / "acme" / ".env")
    assert values["POSTGRES_DB"] == "powerchat_acme"
    assert values["ADMIN_EMAIL"] == "ops@acme.test"


@pytest.mark.parametrize(
    ("args", "message"),
    [
        (["--name", "Bad Name"], "Invalid --name"),
        (
            ["--name", "acme", "--company", "Acme", "--admin-email", "nope"],
            "Invalid --admin-email",
        ),
    ],
)
def test_deploy_create_rejects_invalid_input(
    env: dict[str, str], args: list[str], message: str
) -> None:
    """Invalid flags exit with status 1."""
    result = runner.invoke(app, ["deploy", "create", *args], env=env)

    assert result.exit_code == 1
    assert message in result.stdout


def test_deploy_duplicate_name_fails(env: dict[str, str]) -> None:
    """Names are unique across the registry."""
    assert _deploy(env, "acme", "--no-start").exit_code == 0

    result = _deploy(env, "acme", "--no-start")

    assert result.exit_code == 1
    assert "already exists" in result.stdout


def test_deploy_build_failure_exits_one_but_keeps_record(
    tmp_path: Path, env: dict[str, str], fake_runtime: FakeRuntime
) -> None:
    """A failed build reports a retry hint and leaves the registration."""
    fake_runtime.fail["build"] = "Dockerfile missing"

    result = _deploy(env, "acme")

    assert result.exit_code == 1
    assert "Provisioning failed" in result.stdout
    assert (tmp_path / "instances" / "acme" / ".env").exists()


def test_manage_list_json_reports_status(env: dict[str, str]) -> None:
    """The JSON listing includes ports, URL and derived status."""
    _deploy(env, "acme", "--no-start")
    _deploy(env, "beta", "--no-start")

    result = runner.invoke(app, ["manage", "list", "--json"], env=env)

    assert result.exit_code == 0
    payload = _extract_json(result.stdout)
    instances = payload["instances"]
    assert [entry["name"] for entry in instances] == ["acme", "beta"]  # type: ignore[union-attr]
    assert instances[0]["status"] == "running"  # type: ignore[index]
    assert instances[1]["url"] == "http://localhost:9001"  # type: ignore[index]
    assert payload["corrupt"] == []


def test_manage_list_skips_corrupt_records(tmp_path: Path, env: dict[str, str]) -> None:
    """Corrupt directories are warned about and skipped."""
    _deploy(env, "acme", "--no-start")
    (tmp_path / "instances" / "broken").mkdir()

    result = runner.invoke(app, ["manage", "list"], env=env)

    assert result.exit_code == 0
    assert "acme" in result.stdout
    assert "Skipped corrupt instance record 'broken'" in result.stdout
    outcome = _last_operation(tmp_path)["result"]
    assert outcome["status"] == "warning"  # type: ignore[index]
    assert outcome["warnings"] == ["Skipped corrupt instance record 'broken'."]  # type: ignore[index]


def test_manage_list_empty_registry(env: dict[str, str]) -> None:
    """An empty registry renders a placeholder row."""
    result = runner.invoke(manage_app, ["list"], env=env)

    assert result.exit_code == 0
    assert "(none)" in result.stdout


def test_manage_start_and_stop(
    tmp_path: Path, env: dict[str, str], fake_runtime: FakeRuntime
) -> None:
    """Single-instance operations call the runtime and log the outcome."""
    _deploy(env, "acme", "--no-start")

    started = runner.invoke(app, ["manage", "start", "acme"], env=env)
    stopped = runner.invoke(app, ["manage", "stop", "acme"], env=env)

    assert started.exit_code == 0
    assert "Instance 'acme' started." in started.stdout
    assert stopped.exit_code == 0
    assert fake_runtime.operations() == ["up", "down"]
    record = _last_operation(tmp_path)
    assert record["command"] == "manage stop"
    assert record["lock_wait_ms"] is not None


def test_manage_unknown_instance_exits_one(env: dict[str, str]) -> None:
    """Operating on an unregistered instance fails cleanly."""
    result = runner.invoke(app, ["manage", "start", "ghost"], env=env)

    assert result.exit_code == 1
    assert "Instance 'ghost' not found." in result.stdout


def test_manage_start_runtime_failure_exits_one(
    env: dict[str, str], fake_runtime: FakeRuntime
) -> None:
    """Runtime errors are shown verbatim."""
    _deploy(env, "acme", "--no-start")
    fake_runtime.fail["up"] = "port is already allocated"

    result = runner.invoke(app, ["manage", "start", "acme"], env=env)

    assert result.exit_code == 1
    assert "port is already allocated" in result.stdout


def test_manage_status_and_info(env: dict[str, str]) -> None:
    """Read-only commands report derived status and details."""
    _deploy(env, "acme", "--no-start")

    status = runner.invoke(app, ["manage", "status", "acme"], env=env)
    info = runner.invoke(app, ["manage", "info", "acme", "--json"], env=env)

    assert status.exit_code == 0
    assert "running" in status.stdout
    assert info.exit_code == 0
    payload = _extract_json(info.stdout)
    assert payload["instance"]["database_name"] == "chat_acme"  # type: ignore[index]
    assert payload["instance"]["status"] == "running"  # type: ignore[index]


def test_manage_logs_no_follow(env: dict[str, str], fake_runtime: FakeRuntime) -> None:
    """``--no-follow`` prints the current logs."""
    _deploy(env, "acme", "--no-start")

    result = runner.invoke(app, ["manage", "logs", "acme", "--no-follow"], env=env)

    assert result.exit_code == 0
    assert "app | ready" in result.stdout
    assert fake_runtime.calls[-1] == ("logs", "acme", False)


def test_manage_update_reports_stale_image(
    env: dict[str, str], fake_runtime: FakeRuntime
) -> None:
    """A failed rebuild restarts on the old image and exits 1 with a warning."""
    _deploy(env, "acme", "--no-start")
    fake_runtime.fail["build"] = "npm ERR!"

    result = runner.invoke(app, ["manage", "update", "acme"], env=env)

    assert result.exit_code == 1
    assert "StaleImage" in result.stdout
    assert fake_runtime.operations() == ["down", "build", "up"]


def test_manage_update_requires_target(env: dict[str, str]) -> None:
    """``update`` needs a name or ``--all``."""
    result = runner.invoke(app, ["manage", "update"], env=env)

    assert result.exit_code == 1


def test_update_all_force_updates_every_instance(
    env: dict[str, str], fake_runtime: FakeRuntime
) -> None:
    """Bulk update runs stop, build and start for each instance in order."""
    _deploy(env, "acme", "--no-start")
    _deploy(env, "beta", "--no-start")

    result = runner.invoke(app, ["manage", "update", "--all", "--force"], env=env)

    assert result.exit_code == 0, result.stdout
    assert "Succeeded: 2" in result.stdout
    assert [call[:2] for call in fake_runtime.calls] == [
        ("down", "acme"),
        ("build", "acme"),
        ("up", "acme"),
        ("down", "beta"),
        ("build", "beta"),
        ("up", "beta"),
    ]


def test_update_all_declined_does_nothing(
    tmp_path: Path, env: dict[str, str], fake_runtime: FakeRuntime
) -> None:
    """Declining the confirmation leaves instances untouched."""
    _deploy(env, "acme", "--no-start")

    result = runner.invoke(app, ["manage", "update-all"], input="n\n", env=env)

    assert result.exit_code == 0
    assert "Aborted" in result.stdout
    assert fake_runtime.calls == []
    outcome = _last_operation(tmp_path)["result"]
    assert outcome["status"] == "warning"  # type: ignore[index]
    assert outcome["warnings"] == ["user-cancelled"]  # type: ignore[index]


def test_stop_all_reports_partial_failure(
    env: dict[str, str], fake_runtime: FakeRuntime
) -> None:
    """One failing instance makes the batch exit 1 after processing the rest."""
    _deploy(env, "acme", "--no-start")
    _deploy(env, "beta", "--no-start")
    _deploy(env, "gamma", "--no-start")
    fake_runtime.fail["down:beta"] = "container busy"

    result = runner.invoke(app, ["manage", "stop-all"], env=env)

    assert result.exit_code == 1
    assert "Succeeded: 2" in result.stdout
    assert "Failed: 1" in result.stdout
    assert "Stop failed for: beta" in result.stdout
    assert [call[1] for call in fake_runtime.calls] == ["acme", "beta", "gamma"]


def test_start_all_aborts_when_runtime_unavailable(
    env: dict[str, str], fake_runtime: FakeRuntime
) -> None:
    """An unreachable daemon stops the batch."""
    _deploy(env, "acme", "--no-start")
    _deploy(env, "beta", "--no-start")
    fake_runtime.unavailable = True

    result = runner.invoke(app, ["manage", "start-all"], env=env)

    assert result.exit_code == 1
    assert "Aborted" in result.stdout
    assert len(fake_runtime.calls) == 1


def test_start_all_with_empty_registry(env: dict[str, str]) -> None:
    """Bulk operations on an empty registry succeed trivially."""
    result = runner.invoke(app, ["manage", "start-all"], env=env)

    assert result.exit_code == 0
    assert "No instances registered." in result.stdout


def test_manage_backup_writes_set_and_lists_it(tmp_path: Path, env: dict[str, str]) -> None:
    """Backups produce four artifacts that ``backups`` reports as complete."""
    _deploy(env, "acme", "--no-start")

    result = runner.invoke(app, ["manage", "backup", "acme"], env=env)

    assert result.exit_code == 0, result.stdout
    files = sorted(path.name.split("_")[0] for path in (tmp_path / "backups" / "acme").iterdir())
    assert files == ["config", "database", "docker-compose", "volumes"]

    listing = runner.invoke(app, ["manage", "backups", "acme", "--json"], env=env)
    payload = _extract_json(listing.stdout)
    (backup,) = payload["backups"]  # type: ignore[misc]
    assert backup["complete"] is True


def test_manage_remove(tmp_path: Path, env: dict[str, str], fake_runtime: FakeRuntime) -> None:
    """Removal tears down containers, purges volumes and deletes the record."""
    _deploy(env, "acme", "--no-start")

    result = runner.invoke(
        app, ["manage", "remove", "acme", "--volumes", "--force"], env=env
    )

    assert result.exit_code == 0, result.stdout
    assert not (tmp_path / "instances" / "acme").exists()
    assert fake_runtime.operations() == ["down", "remove_volumes"]


def test_manage_remove_requires_confirmation(tmp_path: Path, env: dict[str, str]) -> None:
    """Declining removal keeps the instance."""
    _deploy(env, "acme", "--no-start")

    result = runner.invoke(app, ["manage", "remove", "acme"], input="n\n", env=env)

    assert result.exit_code == 0
    assert (tmp_path / "instances" / "acme").exists()


def test_manage_remove_unknown_instance(env: dict[str, str]) -> None:
    """Removing an unknown instance exits 1."""
    result = runner.invoke(app, ["manage", "remove", "ghost", "--force"], env=env)

    assert result.exit_code == 1


@pytest.mark.parametrize("name", [".", "..", "a/b"])
@pytest.mark.parametrize(
    "command",
    [["remove", "--force", "--volumes"], ["start"], ["backups"]],
)
def test_path_like_names_are_rejected(
    tmp_path: Path,
    env: dict[str, str],
    fake_runtime: FakeRuntime,
    command: list[str],
    name: str,
) -> None:
    """Names that resolve outside an instance directory never reach storage."""
    _deploy(env, "acme", "--no-start")
    _deploy(env, "beta", "--no-start")
    verb, *options = command

    result = runner.invoke(app, ["manage", verb, name, *options], env=env)

    assert result.exit_code == 1
    assert "Invalid instance name" in result.stdout
    assert fake_runtime.calls == []
    assert (tmp_path / "instances" / "acme" / ".env").is_file()
    assert (tmp_path / "instances" / "beta" / ".env").is_file()
    assert _last_operation(tmp_path)["result"]["status"] == "error"  # type: ignore[index]


def test_deploy_free_form_database_name_keeps_compose_valid(
    tmp_path: Path, env: dict[str, str]
) -> None:
    """Database names containing YAML syntax still produce a loadable compose file."""
    result = runner.invoke(
        app,
        [
            "deploy",
            "create",
            "--name",
            "acme",
            "--company",
            "Acme Corp",
            "--admin-email",
            "ops@acme.test",
            "--database-name",
            "sales: prod",
            "--no-start",
        ],
        env=env,
    )

    assert result.exit_code == 0, result.stdout
    compose_file = tmp_path / "instances" / "acme" / "docker-compose.yml"
    document = yaml.safe_load(compose_file.read_text(encoding="utf-8"))
    assert document["services"]["postgres-acme"]["environment"]["POSTGRES_DB"] == "sales: prod"
    assert read_env(tmp_path / "instances" / "acme" / ".env")["POSTGRES_DB"] == "sales: prod"


def test_manage_prune_selected_resources(
    env: dict[str, str], fake_runtime: FakeRuntime
) -> None:
    """Only the requested resource kinds are pruned."""
    result = runner.invoke(app, ["manage", "prune", "--images"], env=env)
    everything = runner.invoke(app, ["manage", "prune"], env=env)

    assert result.exit_code == 0
    assert everything.exit_code == 0
    assert [call[1] for call in fake_runtime.calls] == [
        "images",
        "networks",
        "containers",
        "images",
    ]


def test_manage_config_json(tmp_path: Path, env: dict[str, str]) -> None:
    """``config --json`` emits the resolved configuration."""
    result = runner.invoke(app, ["manage", "config", "--json"], env=env)

    assert result.exit_code == 0
    payload = _extract_json(result.stdout)
    assert payload["instances_dir"] == str(tmp_path / "instances")
    assert payload["ports"]["app_base"] == 9000  # type: ignore[index]
