from __future__ import annotations

from html import escape
from pathlib import Path
from typing import TYPE_CHECKING, Sequence

from cronshift.domain.state import (
    HealthStatus,
    MigrationConfig,
    RollbackConfig,
    RollbackResult,
    RunContext,
    StepStatus,
)

if TYPE_CHECKING:
    from cronshift.services.backup import BackupMetadata
    from cronshift.services.executor import Step


# Report renderers are pure: same inputs, same text.

NOTIFICATION_SUBJECT = "🚨 URGENT: Migration Rollback Executed"

_CHECK_ICONS = {HealthStatus.PASS: "✅", HealthStatus.FAIL: "❌", HealthStatus.WARNING: "⚠️"}
_STEP_ICONS = {StepStatus.SUCCESS: "✅", StepStatus.FAILED: "❌", StepStatus.SKIPPED: "⏭️"}


def _kb(size: int | None) -> str:
    return f"{(size or 0) / 1024:.2f} KB"


def render_migration_report(
    ctx: RunContext,
    config: MigrationConfig,
    phases: Sequence["Step"],
    *,
    generated_at: str,
) -> str:
    passed = len(ctx.passed())
    failed = len(ctx.failed())
    warnings = len(ctx.warnings())
    # A phase can fail by raising without recording a failed check.
    succeeded = failed == 0 and not any(record.status == StepStatus.FAILED for record in ctx.steps)
    descriptions = {phase.name: phase.description for phase in phases}
    lines = [
        "# Migration Report",
        "",
        f"**Timestamp:** {config.timestamp}",
        f"**Mode:** {'Dry Run' if config.dry_run else 'Production'}",
        f"**Backup ID:** {ctx.backup_id or 'N/A'}",
        "",
        "## Summary",
        f"- ✅ Passed: {passed}",
        f"- ❌ Failed: {failed}",
        f"- ⚠️  Warnings: {warnings}",
        f"- **Status:** {'✅ SUCCESS' if succeeded else '❌ FAILED'}",
        "",
        "## Health Checks",
    ]
    lines.extend(
        f"- {_CHECK_ICONS[check.status]} **{check.name}**: {check.message}" for check in ctx.health_checks
    )
    lines.extend(["", "## Phases Executed"])
    # Phases skipped after an abort were never attempted.
    for record in ctx.steps:
        if record.status == StepStatus.SKIPPED:
            continue
        description = descriptions.get(record.name, "")
        lines.append(f"- {_STEP_ICONS[record.status]} {record.name}: {description}")
    if ctx.errors:
        lines.extend(["", "## Errors"])
        lines.extend(f"- ❌ {error}" for error in ctx.errors)
    if not succeeded:
        lines.extend(
            [
                "",
                "## Rollback Instructions",
                "If issues persist, run:",
                "```bash",
                f"cronshift-rollback {ctx.backup_id or '<backup-id>'}",
                "```",
            ]
        )
    lines.extend(["", "---", f"Generated on {generated_at}"])
    return "\n".join(lines)


def _status_of(result: RollbackResult, name: str) -> StepStatus | None:
    return result.step_status(name)


def render_rollback_report(config: RollbackConfig, result: RollbackResult, *, generated_at: str) -> str:
    lines = [
        "# Emergency Rollback Report",
        "",
        f"**Timestamp:** {config.timestamp}",
        f"**Backup ID:** {config.backup_id}",
        f"**Force Mode:** {'Enabled' if config.force else 'Disabled'}",
        f"**Notifications:** {'Enabled' if config.notify else 'Disabled'}",
        f"**Duration:** {result.total_duration:.2f}s",
        "",
        "## Summary",
        f"- ✅ Success: {result.count(StepStatus.SUCCESS)}",
        f"- ❌ Failed: {result.count(StepStatus.FAILED)}",
        f"- ⏭️  Skipped: {result.count(StepStatus.SKIPPED)}",
        f"- **Overall Status:** {'✅ SUCCESS' if result.success else '❌ FAILED'}",
        "",
        "## Steps Executed",
    ]
    for step in result.steps:
        duration = f" ({step.duration:.2f}s)" if step.duration else ""
        lines.append(f"- {_STEP_ICONS[step.status]} **{step.name}**: {step.message}{duration}")
    if result.errors:
        lines.extend(["", "## Errors"])
        lines.extend(f"- ❌ {error}" for error in result.errors)

    config_restored = _status_of(result, "restore-vercel-config") == StepStatus.SUCCESS
    database_restored = _status_of(result, "restore-database") == StepStatus.SUCCESS
    health_passed = _status_of(result, "verify-system-health") == StepStatus.SUCCESS
    lines.extend(
        [
            "",
            "## System Status",
            "- **Configuration:** "
            + (f"Restored to backup {config.backup_id}" if config_restored else "Not restored"),
            f"- **Database:** {'Restored' if database_restored else 'Not restored'}",
            f"- **Health Check:** {'Passed' if health_passed else 'Failed'}",
            "",
            "## Next Actions",
            "1. **Immediate:** Verify system functionality manually",
            "2. **Short-term:** Monitor system performance and logs",
            "3. **Long-term:** Investigate root cause and plan re-migration",
            "",
            "## Files Created",
            f"- Rollback log: `rollback-logs/rollback-{config.timestamp}.json`",
            f"- Config backup: `vercel.json.rollback-{config.timestamp}`",
            f"- Data backups: `rollback-backups/*-{config.timestamp}.json`",
            "",
            "---",
            f"Generated on {generated_at}",
        ]
    )
    return "\n".join(lines)


def render_notification_email(config: RollbackConfig, result: RollbackResult, *, generated_at: str) -> str:
    errors_html = ""
    if result.errors:
        items = "".join(f'<li style="color: #d32f2f;">{escape(error)}</li>' for error in result.errors)
        errors_html = f"<h2>Errors</h2>\n<ul>{items}</ul>\n"
    return (
        "<!DOCTYPE html>\n"
        '<html>\n<head><meta charset="utf-8"><title>Migration Rollback Alert</title></head>\n'
        '<body style="font-family: Arial, sans-serif; line-height: 1.6; color: #333;">\n'
        f'<h1 style="color: #d32f2f;">{escape(NOTIFICATION_SUBJECT)}</h1>\n'
        "<p><strong>⚠️ A migration rollback has been executed on the system.</strong></p>\n"
        "<h2>Rollback Details</h2>\n<ul>"
        f"<li><strong>Timestamp:</strong> {escape(config.timestamp)}</li>"
        f"<li><strong>Backup ID:</strong> {escape(config.backup_id)}</li>"
        f"<li><strong>Force Mode:</strong> {'Yes' if config.force else 'No'}</li>"
        f"<li><strong>Duration:</strong> {result.total_duration:.2f}s</li>"
        "</ul>\n<h2>Rollback Status</h2>\n<ul>"
        f"<li><strong>Success Steps:</strong> {result.count(StepStatus.SUCCESS)}</li>"
        f"<li><strong>Failed Steps:</strong> {result.count(StepStatus.FAILED)}</li>"
        f"<li><strong>Overall Status:</strong> {'✅ SUCCESS' if result.success else '❌ FAILED'}</li>"
        "</ul>\n"
        f"{errors_html}"
        "<h2>Next Steps</h2>\n<ol>"
        "<li>Verify system functionality</li>"
        "<li>Check application logs</li>"
        "<li>Monitor system performance</li>"
        "<li>Investigate root cause of rollback</li>"
        "</ol>\n"
        "<p><strong>Note:</strong> This is an automated notification. "
        "Please verify system status manually.</p>\n"
        f'<p style="color: #666; font-size: 12px;">Generated on {escape(generated_at)}</p>\n'
        "</body>\n</html>"
    )


def render_backup_report(metadata: "BackupMetadata", backup_path: Path, *, generated_at: str) -> str:
    total_size = metadata.total_size()
    lines = [
        "# Migration Backup Report",
        "",
        f"**Timestamp:** {metadata.timestamp}",
        f"**Backup Directory:** {backup_path}",
        f"**Total Size:** {total_size / 1024 / 1024:.2f} MB",
        f"**Total Records:** {metadata.record_count()}",
        "",
        "## Files Backed Up",
        "",
        "### Configuration",
    ]
    config_keys = [key for key in metadata.checksums if key.endswith(".json")]
    lines.extend(f"- ✅ {key} ({_kb(metadata.backup_size.get(key))})" for key in config_keys)
    lines.extend(["", "### Database Tables"])
    for table in metadata.database_tables:
        if table not in metadata.total_records:
            lines.append(f"- ❌ {table}: export failed")
            continue
        lines.append(
            f"- ✅ {table}: {metadata.total_records[table]} records ({_kb(metadata.backup_size.get(table))})"
        )
    lines.extend(
        [
            "",
            "### Schema",
            f"- ✅ Database schema snapshot ({_kb(metadata.backup_size.get('schema'))})",
            "",
            f"## Checksums ({metadata.checksum_algorithm})",
        ]
    )
    lines.extend(f"- {key}: {value}" for key, value in metadata.checksums.items())
    lines.extend(
        [
            "",
            "## Restoration",
            "To restore this backup, use:",
            "```bash",
            f"cronshift-rollback {metadata.timestamp}",
            "```",
            "",
            "---",
            f"Generated on {generated_at}",
        ]
    )
    return "\n".join(lines)
