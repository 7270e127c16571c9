"""Tests for reporting module."""

import json
import sys
from pathlib import Path

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from conftest import network_subnets_database
from reconcile.plan import build_plan
from reporting import RunReport


class TestRunReport:
    """Tests for RunReport."""

    def test_writes_json_and_markdown(self, tmp_path, description, store, registry, executor):
        plan = build_plan(description, store, registry)
        report = RunReport(description='webapp', report_dir=tmp_path / 'reports', plan_summary=plan.summary())
        report.start()
        json_path, md_path = report.finish(executor.apply(plan))

        assert json_path.name.endswith('.webapp.success.json')
        assert md_path.suffix == '.md'
        data = json.loads(json_path.read_text())
        assert data['status'] == 'success'
        assert data['plan']['create'] == 4
        assert len(data['batches']) == 3
        assert 'create:database.main' in md_path.read_text()

    def test_to_dict_reports_first_failure(self, tmp_path, store, registry, executor, backend):
        executor.apply(build_plan(network_subnets_database(), store, registry))
        db = next(r for r in store.list_all() if r.kind == 'database')
        backend.objects.pop(('database', db.resource_id))
        attrs = {'engine': 'postgres', 'size': 'large',
                 'subnet_ids': ['${subnet.app[0].id}', '${subnet.app[1].id}']}
        plan = build_plan(network_subnets_database(db_attrs=attrs), store, registry)

        report = RunReport(description='webapp', report_dir=tmp_path)
        report.start()
        report.finish(executor.apply(plan))
        d = report.to_dict()
        assert d['status'] == 'failed'
        assert not d['success']
        assert d['error'].startswith('database.main:')
        assert d['summary']['failed'] == ['database.main']

    def test_status_before_finish(self, tmp_path):
        report = RunReport(description='webapp', report_dir=tmp_path)
        assert report.status == 'unknown'
        assert report.duration == 0.0
        assert 'steps' not in report.to_dict()

    def test_slug_in_filename(self, tmp_path, store, registry, executor):
        report = RunReport(description='team/webapp', report_dir=tmp_path, verb='destroy')
        report.start()
        plan = build_plan(network_subnets_database(), store, registry, destroy_all=True)
        paths = report.finish(executor.apply(plan))
        assert all('.team-webapp.' in p.name for p in paths)
