"""Apply run reporting."""

import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional

from reconcile.executor import ApplyResult


@dataclass
class RunReport:
    """Collects an apply run and writes JSON and markdown reports."""
    description: str
    report_dir: Path
    verb: str = 'apply'
    result: Optional[ApplyResult] = None
    plan_summary: dict = field(default_factory=dict)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def start(self):
        """Mark run start."""
        self.started_at = datetime.now()
        self.report_dir.mkdir(parents=True, exist_ok=True)

    def finish(self, result: ApplyResult) -> list[Path]:
        """Finalize report and write files."""
        self.finished_at = datetime.now()
        self.result = result
        return [self._write_json(), self._write_markdown()]

    @property
    def status(self) -> str:
        return self.result.status if self.result else 'unknown'

    @property
    def duration(self) -> float:
        if self.finished_at and self.started_at:
            return (self.finished_at - self.started_at).total_seconds()
        return 0.0

    def _write_json(self) -> Path:
        """Write JSON report."""
        data = {
            'description': self.description,
            'verb': self.verb,
            'status': self.status,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
            'duration': self.duration,
            'plan': self.plan_summary,
            'summary': self.result.summary() if self.result else {},
            'batches': [b.to_dict() for b in self.result.batches] if self.result else [],
        }
        filename = self._report_filename('json')
        with open(filename, 'w', encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        return filename

    def _write_markdown(self) -> Path:
        """Write markdown report."""
        lines = [
            f"# {self.verb} {self.description}",
            "",
            f"**Status**: {self.status.upper()}",
            f"**Date**: {self.started_at.strftime('%Y-%m-%d %H:%M:%S') if self.started_at else 'N/A'}",
            f"**Duration**: {self.duration:.1f}s",
            "",
            "## Steps",
            "",
            "| Batch | Step | Status | Attempts | Duration | Message |",
            "|-------|------|--------|----------|----------|---------|",
        ]

        for batch in (self.result.batches if self.result else []):
            for o in sorted(batch.outcomes, key=lambda o: o.key):
                status_emoji = {'success': '✅', 'failed': '❌', 'skipped': '⏭️'}.get(o.status, '❓')
                lines.append(f"| {batch.index} | {o.key} | {status_emoji} {o.status} | {o.attempts} "
                             f"| {o.duration:.1f}s | {o.error or ''} |")

        if self.result and self.result.unchanged:
            lines.extend(["", "## Unchanged", ""])
            lines.extend(f"- {addr}" for addr in self.result.unchanged)

        lines.extend(["", "---", f"Generated: {datetime.now().isoformat()}"])

        filename = self._report_filename('md')
        with open(filename, 'w', encoding="utf-8") as f:
            f.write('\n'.join(lines))
        return filename

    def _report_filename(self, ext: str) -> Path:
        """Generate report filename.

        Includes description name to avoid collisions between parallel runs.
        """
        timestamp = self.started_at.strftime('%Y%m%d-%H%M%S') if self.started_at else 'unknown'
        slug = self.description.replace('/', '-')
        return self.report_dir / f"{timestamp}.{slug}.{self.status}.{ext}"

    def to_dict(self) -> dict:
        """Return report as dictionary for JSON output."""
        result = {
            'description': self.description,
            'verb': self.verb,
            'status': self.status,
            'success': self.status == 'success',
            'duration_seconds': round(self.duration, 1),
            'plan': self.plan_summary,
        }
        if self.result:
            result['summary'] = self.result.summary()
            result['steps'] = [o.to_dict() for o in self.result.outcomes]
            failed = [o for o in self.result.outcomes if o.status == 'failed']
            if failed:
                result['error'] = f"{failed[0].address}: {failed[0].error}"
        return result
