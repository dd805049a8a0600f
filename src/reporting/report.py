"""Apply reporting."""

import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Optional


@dataclass
class ApplyReport:
    """Collects an apply/destroy run and writes JSON and Markdown reports."""
    stack: str
    report_dir: Path
    command: str = 'apply'
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    success: bool = False
    status: str = ''
    records: list[dict] = field(default_factory=list)
    outputs: dict = field(default_factory=dict)
    rollback: Optional[dict] = None
    errors: list[str] = field(default_factory=list)

    def start(self):
        """Mark run start."""
        self.started_at = datetime.now()
        self.report_dir.mkdir(parents=True, exist_ok=True)

    def finish(self, result) -> list[Path]:
        """Finalize report from an ApplyResult and write files."""
        self.finished_at = datetime.now()
        self.success = result.success
        self.status = result.status
        self.records = [r.to_dict() for r in result.records]
        self.outputs = dict(result.outputs)
        self.rollback = result.rollback.to_dict() if result.rollback is not None else None
        self.errors = list(result.errors)
        return [self._write_json(), self._write_markdown()]

    @property
    def duration(self) -> float:
        if self.finished_at and self.started_at:
            return (self.finished_at - self.started_at).total_seconds()
        return 0.0

    def to_dict(self) -> dict:
        data: dict[str, Any] = {
            'stack': self.stack,
            'command': self.command,
            'success': self.success,
            'status': self.status,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
            'duration': round(self.duration, 1),
            'records': self.records,
            'outputs': self.outputs,
        }
        if self.rollback is not None:
            data['rollback'] = self.rollback
        if self.errors:
            data['errors'] = self.errors
        return data

    def _write_json(self) -> Path:
        """Write JSON report."""
        filename = self._report_filename('json')
        with open(filename, 'w', encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2)
        return filename

    def _write_markdown(self) -> Path:
        """Write markdown report."""
        lines = [
            f"# {self.command} {self.stack}",
            "",
            f"**Status**: {self.status}",
            f"**Date**: {self.started_at.strftime('%Y-%m-%d %H:%M:%S') if self.started_at else 'N/A'}",
            f"**Duration**: {self.duration:.1f}s",
            "",
            "## Actions",
            "",
            "| Resource | Action | Phase | Status | Attempts | Physical ID | Error |",
            "|----------|--------|-------|--------|----------|-------------|-------|",
        ]

        for r in self.records:
            status_emoji = {
                'succeeded': '✅', 'failed': '❌', 'skipped': '⏭️', 'cancelled': '⏹️',
                'rolled_back': '↩️', 'rollback_failed': '⚠️',
            }.get(r['status'], '❓')
            action = 'replace' if r.get('replace') and r['action'] == 'update' else r['action']
            lines.append(
                f"| {r['resource_id']} | {action} | {r.get('phase', '')} | "
                f"{status_emoji} {r['status']} | {r.get('attempts', 0)} | "
                f"{r.get('physical_id', '')} | {r.get('error', '')} |"
            )

        if self.rollback is not None:
            lines.extend([
                "",
                "## Rollback",
                "",
                f"Fully rolled back: {'yes' if self.rollback['fully_rolled_back'] else 'no'}",
                "",
                "| Resource | Compensation | Status | Error |",
                "|----------|--------------|--------|-------|",
            ])
            for e in self.rollback['entries']:
                lines.append(
                    f"| {e['resource_id']} | {e['compensation']} | {e['status']} | {e.get('error', '')} |"
                )

        if self.outputs:
            lines.extend(["", "## Outputs", "", "| Name | Value |", "|------|-------|"])
            for name, value in self.outputs.items():
                lines.append(f"| {name} | {value} |")

        if self.errors:
            lines.extend(["", "## Errors", ""])
            lines.extend(f"- {e}" for e in self.errors)

        lines.extend(["", "---", f"Generated: {datetime.now().isoformat()}"])

        filename = self._report_filename('md')
        with open(filename, 'w', encoding="utf-8") as f:
            f.write('\n'.join(lines))
        return filename

    def _report_filename(self, ext: str) -> Path:
        """Generate report filename.

        Includes the stack name to avoid collisions between stacks.
        """
        timestamp = self.started_at.strftime('%Y%m%d-%H%M%S') if self.started_at else 'unknown'
        stack_slug = self.stack.replace('/', '-')
        status = self.status or ('applied' if self.success else 'failed')
        return self.report_dir / f"{timestamp}.{stack_slug}.{status}.{ext}"
