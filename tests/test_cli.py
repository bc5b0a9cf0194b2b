"""
命令行测试
"""
import json
import pytest
from click.testing import CliRunner

from bpmn_engine.cli import cli


def write_flowchart(tmp_path, items, name="flow.yaml"):
    path = tmp_path / name
    if name.endswith(".json"):
        path.write_text(json.dumps({"id": "cli-flow", "targetType": "Lead", "list": items}), encoding="utf-8")
    else:
        lines = ["id: cli-flow", "targetType: Lead", "list:"]
        for item in items:
            first = True
            for key, value in item.items():
                prefix = "  - " if first else "    "
                lines.append(f"{prefix}{key}: {json.dumps(value)}")
                first = False
        path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return str(path)


def flow(flow_id, start_id, end_id):
    return {"id": flow_id, "type": "flow", "startId": start_id, "endId": end_id}


@pytest.fixture
def runner(monkeypatch):
    monkeypatch.setenv("BPMN_LOG_LEVEL", "WARNING")
    return CliRunner()


class TestValidateCommand:
    """validate 命令测试类"""

    def test_valid_flowchart(self, runner, tmp_path):
        path = write_flowchart(tmp_path, [
            {"id": "start", "type": "eventStart"},
            {"id": "end", "type": "eventEnd"},
            flow("f1", "start", "end"),
        ])

        result = runner.invoke(cli, ["validate", path])

        assert result.exit_code == 0
        assert "Flowchart 'cli-flow' is valid (2 elements)" in result.output
        assert "Start events: start" in result.output

    def test_invalid_flowchart(self, runner, tmp_path):
        path = write_flowchart(tmp_path, [
            {"id": "start", "type": "eventStart"},
            flow("f1", "start", "ghost"),
        ], name="flow.json")

        result = runner.invoke(cli, ["validate", path])

        assert result.exit_code == 1
        assert "Invalid flowchart" in result.output


class TestRunCommand:
    """run 命令测试类"""

    def test_run_to_end(self, runner, tmp_path):
        """测试在内存中运行流程"""
        path = write_flowchart(tmp_path, [
            {"id": "start", "type": "eventStart"},
            {"id": "gateway", "type": "gatewayExclusive", "defaultFlowId": "to_low",
             "flowList": [{"id": "to_high", "conditionsAll": [
                 {"attribute": "amount", "comparison": "greaterThan", "value": 50}
             ]}]},
            {"id": "high", "type": "task", "actionList": [{"type": "setVariable", "name": "tier", "value": "high"}]},
            {"id": "low", "type": "task", "actionList": [{"type": "setVariable", "name": "tier", "value": "low"}]},
            {"id": "end", "type": "eventEnd"},
            flow("f1", "start", "gateway"),
            flow("to_high", "gateway", "high"),
            flow("to_low", "gateway", "low"),
            flow("f4", "high", "end"),
            flow("f5", "low", "end"),
        ])

        result = runner.invoke(cli, ["run", path, "--attr", "amount=120", "--var", "source=cli"])

        assert result.exit_code == 0, result.output
        assert ": Ended" in result.output
        assert "'tier': 'high'" in result.output
        assert "'source': 'cli'" in result.output

    def test_run_with_advance(self, runner, tmp_path):
        """测试推进时钟后处理定时器"""
        path = write_flowchart(tmp_path, [
            {"id": "start", "type": "eventStart"},
            {"id": "timer", "type": "eventIntermediateTimerCatch", "timerShift": 2, "timerShiftUnits": "hours"},
            {"id": "end", "type": "eventEnd"},
            flow("f1", "start", "timer"),
            flow("f2", "timer", "end"),
        ])

        waiting = runner.invoke(cli, ["run", path])
        assert ": Started" in waiting.output
        assert "* #" in waiting.output

        advanced = runner.invoke(cli, ["run", path, "--advance", "3"])
        assert "proceeded 1 pending flow nodes" in advanced.output
        assert ": Ended" in advanced.output

    def test_bad_assignment(self, runner, tmp_path):
        path = write_flowchart(tmp_path, [{"id": "start", "type": "eventStart"}])

        result = runner.invoke(cli, ["run", path, "--var", "novalue"])

        assert result.exit_code != 0

    def test_unknown_start_element(self, runner, tmp_path):
        path = write_flowchart(tmp_path, [{"id": "start", "type": "eventStart"}])

        result = runner.invoke(cli, ["run", path, "--start-element", "ghost"])

        assert result.exit_code == 1
        assert "Error:" in result.output


class TestDatabaseCommands:
    """数据库相关命令测试类"""

    @pytest.fixture
    def database_url(self, runner, tmp_path, monkeypatch):
        url = f"sqlite+aiosqlite:///{tmp_path / 'engine.db'}"
        monkeypatch.setenv("BPMN_DATABASE_URL", url)
        return url

    def test_init_db(self, runner, database_url, tmp_path):
        result = runner.invoke(cli, ["init-db"])

        assert result.exit_code == 0, result.output
        assert f"Database initialized: {database_url}" in result.output
        assert (tmp_path / "engine.db").exists()

    def test_process_pending_on_empty_database(self, runner, database_url):
        result = runner.invoke(cli, ["process-pending", "--root-process-id", "p1"])

        assert result.exit_code == 0, result.output
        assert "Proceeded 0 pending flow nodes" in result.output

    def test_process_parallel_on_empty_database(self, runner, database_url):
        result = runner.invoke(cli, ["process-parallel", "--timeout", "5"])

        assert result.exit_code == 0, result.output
        assert "Scheduled 0 root processes" in result.output
