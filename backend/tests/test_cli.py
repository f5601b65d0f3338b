import pytest

from snaptriage import cli
from snaptriage.models.image import ImageStatus

from conftest import seed_image, seed_project


@pytest.mark.anyio("asyncio")
async def test_reconcile_projects_dry_run_then_apply(ctx, capsys: pytest.CaptureFixture[str]) -> None:
    await seed_project(ctx, name="Drifted", image_count=4)

    corrections = await cli.reconcile_projects(ctx, apply=False)
    out = capsys.readouterr().out
    assert "[DRY RUN] 1 projects checked, 1 with a drifted image count" in out
    assert "--apply" in out
    assert corrections[0].actual == 0

    await cli.reconcile_projects(ctx, apply=True)
    assert "[APPLIED]" in capsys.readouterr().out
    corrections = await cli.reconcile_projects(ctx, apply=False)
    assert not corrections[0].drifted


@pytest.mark.anyio("asyncio")
async def test_backfill_without_analyzer_reports_disabled(ctx, capsys: pytest.CaptureFixture[str]) -> None:
    await seed_image(ctx, status=ImageStatus.approved, reviewed="true", write_files=False)

    counts = await cli.backfill_enrichment(ctx, limit=None, delay=0)

    assert counts == {"processed": 0, "enriched": 0, "failed": 0}
    assert "disabled" in capsys.readouterr().out


@pytest.mark.anyio("asyncio")
async def test_sweep_stale_prints_count(ctx, capsys: pytest.CaptureFixture[str]) -> None:
    assert await cli.sweep_stale(ctx) == 0
    assert "0 stale relocations" in capsys.readouterr().out


def test_parser_dispatches_known_commands(monkeypatch: pytest.MonkeyPatch) -> None:
    seen: list[tuple[str, bool]] = []

    async def _fake_with_context(func, *, use_redis: bool = False):
        seen.append((getattr(func, "__name__", "lambda"), use_redis))

    monkeypatch.setattr(cli, "_with_context", _fake_with_context)
    parser = cli._build_parser()

    assert cli._run_cli_command(parser.parse_args(["sweep-stale"])) is True
    assert cli._run_cli_command(parser.parse_args(["worker", "--poll-interval", "0.5"])) is True
    assert cli._run_cli_command(parser.parse_args(["reconcile-projects", "--apply"])) is True
    assert cli._run_cli_command(parser.parse_args([])) is False
    assert seen == [("sweep_stale", False), ("<lambda>", True), ("<lambda>", False)]
