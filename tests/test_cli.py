import csv
import json
import sys

import pytest
import yaml

from pipebricks.bootstrap import load_builtin_connectors
from pipebricks.cli import build_orchestrator, cli, load_config, main


def setup_function() -> None:
    load_builtin_connectors(reload=True)


def _source_csv(tmp_path):
    path = tmp_path / "customers.csv"
    with open(path, "w", encoding="utf-8", newline="") as f:
        writer = csv.writer(f)
        writer.writerows([["customer_name", "customer_email"], ["ada", "ada@example.test"], ["grace", "g@example.test"]])
    return path


def _definition(tmp_path):
    return {
        "name": "customers-to-csv",
        "source": {"type": "csv", "connection_string": str(_source_csv(tmp_path))},
        "destination": {
            "type": "csv",
            "connection_string": str(tmp_path / "out.csv"),
            "schema": "Name, CustomerEmail",
        },
        "field_mappings": [
            {"source_field": "customer_name", "destination_field": "Name"},
            {"source_field": "customer_email", "destination_field": "CustomerEmail"},
        ],
        "transformations": ["TITLE_CASE(Name)"],
    }


def test_main_runs_pipeline_from_dict(tmp_path):
    result = main(config_dict=_definition(tmp_path))

    assert result["status"] == "Success"
    assert result["rows_processed"] == 2
    assert result["triggered_by"] == "cli"
    assert "config_snapshot" not in result
    lines = (tmp_path / "out.csv").read_text(encoding="utf-8").splitlines()
    assert lines == ["Name,CustomerEmail", "Ada,ada@example.test", "Grace,g@example.test"]


def test_main_runs_pipeline_from_yaml_file(tmp_path):
    path = tmp_path / "pipeline.yaml"
    path.write_text(yaml.safe_dump(_definition(tmp_path)), encoding="utf-8")

    result = main(config_path=str(path))

    assert result["status"] == "Success"


def test_main_dry_run_does_not_write(tmp_path):
    result = main(config_dict=_definition(tmp_path), command="dry-run", sample_size=1)

    assert result["transformed_preview"] == [{"Name": "Ada", "CustomerEmail": "ada@example.test"}]
    assert not (tmp_path / "out.csv").exists()


def test_main_automap_and_schema(tmp_path):
    definition = _definition(tmp_path)
    definition["field_mappings"] = []

    mapped = main(config_dict=definition, command="automap")
    schema = main(config_dict=definition, command="schema")

    assert [(m["source_field"], m["destination_field"]) for m in mapped["field_mappings"]] == [
        ("customer_email", "CustomerEmail"),
    ]
    assert schema == {"fields": ["customer_name", "customer_email"]}


def test_connection_profiles_feed_the_resolver(tmp_path):
    definition = _definition(tmp_path)
    definition["source"] = {"type": "csv", "parameters": {"connectionProfileId": "crm"}}
    definition["connection_profiles"] = {"crm": str(_source_csv(tmp_path))}

    orchestrator, pipeline = build_orchestrator(definition)

    assert orchestrator.run_pipeline(pipeline.id).rows_processed == 2


def test_main_requires_a_definition_and_known_command(tmp_path):
    with pytest.raises(ValueError, match="config_path or config_dict"):
        main()
    with pytest.raises(ValueError, match="Unknown command"):
        main(config_dict=_definition(tmp_path), command="explode")


def test_load_config_rejects_missing_and_unknown_files(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(str(tmp_path / "missing.json"))

    bad = tmp_path / "pipeline.toml"
    bad.write_text("name = 'x'", encoding="utf-8")
    with pytest.raises(ValueError, match="Unsupported config format"):
        load_config(str(bad))


def test_load_config_reads_json(tmp_path):
    path = tmp_path / "pipeline.json"
    path.write_text(json.dumps(_definition(tmp_path)), encoding="utf-8")

    assert load_config(str(path))["name"] == "customers-to-csv"


def test_cli_exit_code_follows_run_status(tmp_path, monkeypatch, capsys):
    monkeypatch.setattr("pipebricks.cli.configure_root_logger", lambda level: None)
    path = tmp_path / "pipeline.json"
    definition = _definition(tmp_path)
    path.write_text(json.dumps(definition), encoding="utf-8")
    monkeypatch.setattr(sys, "argv", ["pipebricks", "run", str(path)])

    with pytest.raises(SystemExit) as exc_info:
        cli()

    assert exc_info.value.code == 0
    assert json.loads(capsys.readouterr().out)["status"] == "Success"

    definition["source"]["connection_string"] = str(tmp_path / "missing.csv")
    path.write_text(json.dumps(definition), encoding="utf-8")
    with pytest.raises(SystemExit) as exc_info:
        cli()

    assert exc_info.value.code == 1
    assert json.loads(capsys.readouterr().out)["stage"] == "SourceRead"


def test_cli_test_connection(tmp_path, monkeypatch, capsys):
    monkeypatch.setattr("pipebricks.cli.configure_root_logger", lambda level: None)
    monkeypatch.setattr(sys, "argv", ["pipebricks", "test-connection", "csv", str(_source_csv(tmp_path))])

    with pytest.raises(SystemExit) as exc_info:
        cli()

    assert exc_info.value.code == 0
    assert json.loads(capsys.readouterr().out)["success"] is True
