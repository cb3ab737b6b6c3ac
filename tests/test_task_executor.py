"""
Tests for TaskExecutor and the task handlers.
"""
import os
import sys

import pytest

from fleet_agent.config import ConfigManager
from fleet_agent.core import TaskExecutor
from fleet_agent.errors import SecurityViolationError
from fleet_agent.models import Task, TaskStatus, TaskType
from fleet_agent.task_handlers import BaseTaskHandler, CommandTaskHandler, PolicyTaskHandler, SoftwareTaskHandler
from fleet_agent.task_handlers.base_handler import TRUNCATION_NOTICE

from tests.helpers import FakeHostFacts

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="requires /bin/bash")


@pytest.fixture
def executor(config, host_facts):
    return TaskExecutor(config, host_facts)


def make_task(task_type, **payload):
    return Task(task_id="task-1", type=TaskType.parse(task_type), payload=payload)


@pytest.fixture
def recorded_processes(monkeypatch):
    """Replaces process execution with a recorder that reports success."""
    calls = []

    def fake_run_process(self, args, timeout):
        calls.append(args)
        return {"output": "", "exit_code": 0}

    monkeypatch.setattr(BaseTaskHandler, "run_process", fake_run_process)
    return calls


class TestDispatch:
    def test_every_task_type_has_a_handler(self, executor):
        assert executor.supported_types == sorted(t.value for t in TaskType)

    def test_requires_host_facts(self, config):
        with pytest.raises(ValueError):
            TaskExecutor(config, None)

    def test_unknown_type_fails(self, executor):
        result = executor.execute(make_task("format_disk"))

        assert result.status is TaskStatus.FAILED
        assert result.result_payload["error_type"] == "UnsupportedTaskType"
        assert result.progress == 1.0

    def test_missing_parameter_fails(self, executor):
        result = executor.execute(make_task("run_command"))

        assert result.status is TaskStatus.FAILED
        assert result.result_payload["error_type"] == "MissingParameter"
        assert "command" in result.result_payload["error"]

    def test_unexpected_handler_exception_is_captured(self, executor, host_facts, monkeypatch):
        def explode():
            raise RuntimeError("sensor offline")

        monkeypatch.setattr(host_facts, "get_usage_stats", explode)

        result = executor.execute(make_task("system_check"))

        assert result.status is TaskStatus.FAILED
        assert result.result_payload["error_type"] == "HandlerError"
        assert result.result_payload["exception"] == "RuntimeError"

    def test_result_serialization(self, executor):
        result = executor.execute(make_task("system_check"))
        data = result.to_dict()

        assert data["task_id"] == "task-1"
        assert data["status"] == "completed"
        assert data["result"]["system_healthy"] is True
        assert data["start_time"].endswith("Z")


class TestCommandTasks:
    @pytest.mark.parametrize("command", [
        "rm -rf / --no-preserve-root",
        "sudo rm -r /var/db",
        "DISKUTIL ERASE disk2",
        "dd if=/dev/zero of=/dev/disk0",
        "shutdown -h now",
    ])
    def test_deny_list(self, executor, command):
        result = executor.execute(make_task("run_command", command=command))

        assert result.status is TaskStatus.FAILED
        assert result.result_payload["error_type"] == "SecurityViolation"

    def test_configured_patterns_extend_deny_list(self, config_data):
        config_data["task_executor"] = {"blocked_patterns": ["launchctl unload"]}
        handler = CommandTaskHandler(ConfigManager.from_dict(config_data))

        with pytest.raises(SecurityViolationError):
            handler.check_command("launchctl unload /Library/LaunchDaemons/x.plist")

    @posix_only
    def test_echo(self, executor):
        result = executor.execute(make_task("run_command", command="echo hi"))

        assert result.status is TaskStatus.COMPLETED
        assert result.result_payload["output"] == "hi\n"
        assert result.result_payload["exit_code"] == 0
        assert result.result_payload["command"] == "echo hi"

    @posix_only
    def test_non_zero_exit_code_fails(self, executor):
        result = executor.execute(make_task("run_command", command="echo oops >&2; exit 3"))

        assert result.status is TaskStatus.FAILED
        assert result.result_payload["exit_code"] == 3
        assert result.result_payload["error"] == "oops\n"

    @posix_only
    def test_large_output_is_truncated(self, config_data, host_facts):
        config_data["task_executor"] = {"max_output_bytes": 10}
        executor = TaskExecutor(ConfigManager.from_dict(config_data), host_facts)

        result = executor.execute(make_task("run_command", command="printf 'abcdefghijklmnop'; printf 'short' >&2"))

        assert result.status is TaskStatus.COMPLETED
        assert result.result_payload["output"] == "abcdefghij" + TRUNCATION_NOTICE
        assert result.result_payload["error"] == "short"
        assert result.result_payload["truncated"] is True

    @posix_only
    def test_output_within_limit_is_not_flagged(self, executor):
        result = executor.execute(make_task("run_command", command="echo hi"))

        assert "truncated" not in result.result_payload

    @posix_only
    def test_timeout(self, executor):
        task = Task(task_id="task-1", type=TaskType.RUN_COMMAND, payload={"command": "sleep 5"}, timeout_seconds=1)

        result = executor.execute(task)

        assert result.status is TaskStatus.FAILED
        assert result.result_payload["exit_code"] == 124

    @posix_only
    def test_script_runs_and_temp_file_is_removed(self, executor):
        result = executor.execute(make_task("run_script", script='echo "$0"\necho done'))

        assert result.status is TaskStatus.COMPLETED
        script_path, marker = result.result_payload["output"].splitlines()
        assert marker == "done"
        assert os.path.basename(script_path).startswith("fleet_agent_")
        assert not os.path.exists(script_path)

    def test_script_deny_list(self, executor):
        result = executor.execute(make_task("run_script", script="#!/bin/bash\nreboot\n"))
        assert result.result_payload["error_type"] == "SecurityViolation"


class TestSoftwareTasks:
    def test_builds_install_command(self, config, recorded_processes):
        handler = SoftwareTaskHandler(config)

        payload = handler.execute(make_task("install_software", package="wget", package_manager="npm"))

        assert recorded_processes == [["npm", "install", "-g", "wget"]]
        assert payload["package_manager"] == "npm"
        assert payload["command"] == "npm install -g wget"

    def test_defaults_to_brew(self, config, recorded_processes):
        SoftwareTaskHandler(config).execute(make_task("install_software", package="jq"))
        assert recorded_processes == [["brew", "install", "jq"]]

    def test_unsupported_manager(self, executor):
        result = executor.execute(make_task("install_software", package="wget", package_manager="apt"))
        assert result.result_payload["error_type"] == "UnsupportedPackageManager"

    @pytest.mark.parametrize("package", ["wget; rm -rf ~", "--force", "a b"])
    def test_rejects_unsafe_package_names(self, executor, package):
        result = executor.execute(make_task("install_software", package=package))
        assert result.status is TaskStatus.FAILED


class TestPolicyTasks:
    def test_firewall(self, config, recorded_processes):
        payload = PolicyTaskHandler(config).execute(make_task("apply_policy", policy_type="firewall", action="disable"))

        assert recorded_processes[0][-2:] == ["--setglobalstate", "off"]
        assert payload["policy_type"] == "firewall"

    def test_screen_saver(self, config, recorded_processes):
        payload = PolicyTaskHandler(config).execute(make_task("apply_policy", policy_type="screen_saver", timeout="600"))

        assert recorded_processes[0][-3:] == ["idleTime", "-int", "600"]
        assert payload["timeout"] == 600

    def test_invalid_integer_setting(self, executor):
        result = executor.execute(make_task("apply_policy", policy_type="power_management", sleep_time="soon"))
        assert result.status is TaskStatus.FAILED

    def test_security_reports_host_facts(self, executor):
        result = executor.execute(make_task("apply_policy", policy_type="security"))

        assert result.status is TaskStatus.COMPLETED
        assert result.result_payload["status"]["firewall"] == "enabled"

    def test_unsupported_policy(self, executor):
        result = executor.execute(make_task("apply_policy", policy_type="wallpaper"))
        assert result.result_payload["error_type"] == "UnsupportedPolicy"


class TestDataTasks:
    def test_collects_processes_with_limit(self, executor):
        result = executor.execute(make_task("collect_data", data_type="processes", limit="1"))

        assert result.status is TaskStatus.COMPLETED
        assert result.result_payload["data_type"] == "processes"
        assert len(result.result_payload["data"]) == 1

    def test_unknown_data_type(self, executor):
        result = executor.execute(make_task("collect_data", data_type="browser_history"))
        assert result.status is TaskStatus.FAILED

    def test_system_check_unhealthy(self, config):
        executor = TaskExecutor(config, FakeHostFacts(usage={"cpu_usage": 97.0, "memory_usage": 10.0, "disk_usage": 10.0}))

        result = executor.execute(make_task("system_check"))

        assert result.status is TaskStatus.COMPLETED
        assert result.result_payload["system_healthy"] is False
        assert result.result_payload["uptime_seconds"] == 3600
