import json
import stat

from laradeploy.models import Application, PipelineRun, RunStatus, StageResult
from laradeploy.services.report import ReportService


class DummyLogger:
    def __init__(self):
        self.warnings = []

    def warning(self, message, *args, **_kwargs):
        self.warnings.append(message % args if args else message)


def _app(name):
    return Application(name=name, root_path=f"/var/www/{name}", domain=f"{name}.example.com", runtime_version="8.2")


def _run(name, status, **kwargs):
    run = PipelineRun(app_name=name, **kwargs)
    run.status = run.final_status = status
    return run


def test_report_summarizes_runs_and_is_owner_only(tmp_path):
    service = ReportService(
        str(tmp_path / "reports"),
        logger=DummyLogger(),
        host_facts=lambda: {"hostname": "web-1", "disk_free_bytes": 1024},
        last_deployed=lambda name: "2026-03-01T00:00:00+00:00" if name == "shop" else None,
    )
    service.start_run("abc123")

    failed = _run(
        "blog",
        RunStatus.ROLLED_BACK,
        error_kind="MigrationError",
        error="migrate exited 1",
        backup_id="20260301_120000",
    )
    failed.stage_results.append(StageResult("migrate", "failed", started_at="T0", ended_at="T1", error="boom"))
    service.add_application(_app("shop"), _run("shop", RunStatus.SUCCESS))
    service.add_application(_app("blog"), failed)
    service.add_skipped(_app("wiki"), "Run cancelled before this application started.")

    path = service.finalize("partial")

    assert path.endswith("deploy-report-abc123.json")
    assert stat.S_IMODE((tmp_path / "reports" / "deploy-report-abc123.json").stat().st_mode) == 0o600
    report = json.loads(open(path, encoding="utf-8").read())
    assert report["summary"] == {"total": 3, "successful": 1, "failed": 1, "rolled_back": 1, "pending": 1}
    assert report["server_info"]["hostname"] == "web-1"
    assert report["status"] == "partial"
    blog = report["applications"][1]
    assert blog["status"] == "rolled_back"
    assert blog["error_kind"] == "MigrationError"
    assert blog["stages"][0]["name"] == "migrate"
    assert report["applications"][0]["last_deployed"] == "2026-03-01T00:00:00+00:00"
    assert report["duration_seconds"] >= 0


def test_report_write_failure_is_logged_not_raised(tmp_path):
    blocker = tmp_path / "reports"
    blocker.write_text("not a directory", encoding="utf-8")
    logger = DummyLogger()
    service = ReportService(str(blocker), logger=logger)
    service.start_run("abc123")

    assert service.finalize("success") is None
    assert logger.warnings


def test_host_fact_failure_does_not_break_report(tmp_path):
    def broken_facts():
        raise OSError("/proc not mounted")

    logger = DummyLogger()
    service = ReportService(str(tmp_path), logger=logger, host_facts=broken_facts)
    service.start_run("abc123")

    assert service.finalize("success") is not None
    assert any("finalize" in warning for warning in logger.warnings)


def test_rejected_application_counts_as_failed(tmp_path):
    service = ReportService(str(tmp_path / "reports"), logger=DummyLogger())
    service.start_run("abc123")
    service.add_application(_app("shop"), _run("shop", RunStatus.SUCCESS))
    service.add_rejected(
        "/var/www/beta",
        _run("beta", RunStatus.FAILED, error_kind="ValidationError", error="Unsupported PHP version '8.4'."),
    )

    report = json.loads(open(service.finalize("partial"), encoding="utf-8").read())

    beta = report["applications"][1]
    assert beta["name"] == "beta"
    assert beta["status"] == "failed"
    assert beta["error_kind"] == "ValidationError"
    assert beta["domain"] is None
    assert report["summary"]["failed"] == 1
