import json

import pytest

from boothworker.core.errors import ConfigError
from boothworker.core.services import build_services
from boothworker.jobs import run_crawl


def test_parser_reads_start_options():
    args = run_crawl.build_parser().parse_args(
        ["start", "--source-name", "photobooth.net", "--force", "--max-pages", "4"]
    )
    assert args.command == "start"
    assert args.source_name == "photobooth.net"
    assert args.force_crawl is True
    assert args.max_pages == 4


def test_parser_reads_dedup_options():
    args = run_crawl.build_parser().parse_args(["dedup", "--city", "Berlin", "--radius", "25", "--final"])
    assert (args.city, args.radius_m, args.final) == ("Berlin", 25.0, True)


def test_parser_requires_a_command():
    with pytest.raises(SystemExit):
        run_crawl.build_parser().parse_args([])


def test_run_stale_prints_json(monkeypatch, capsys, settings, job_store, source_registry, entity_store):
    built = {}

    def fake_build(cfg):
        services = build_services(
            cfg, jobs=job_store, sources=source_registry, entities=entity_store, provider=object(), extractor=object()
        )
        built["services"] = services
        return services

    monkeypatch.setattr(run_crawl, "get_settings", lambda: settings)
    monkeypatch.setattr(run_crawl, "build_services", fake_build)

    assert run_crawl.run(["stale"]) == 0
    assert json.loads(capsys.readouterr().out) == []
    assert built["services"].orchestrator.executor is None


def test_main_exits_2_on_config_error(monkeypatch):
    def boom(argv=None):
        raise ConfigError("DATABASE_URL must be configured")

    monkeypatch.setattr(run_crawl, "run", boom)
    with pytest.raises(SystemExit) as excinfo:
        run_crawl.main()
    assert excinfo.value.code == 2
