"""
End-to-end tests of the Agent against a fake control plane.
"""
import json
import sys
from datetime import timedelta

import pytest

from fleet_agent.communication import Endpoint
from fleet_agent.config import ConfigManager
from fleet_agent.core import Agent, ConnectionState
from fleet_agent.errors import AgentNotFoundError, SecretStoreError
from fleet_agent.identity import IdentityManager
from fleet_agent.models import Task, TaskType

from tests.helpers import make_pair, make_response, token_response, wait_for

BEARER_ENDPOINTS = [endpoint for endpoint in Endpoint if endpoint.requires_bearer]
CREDENTIALS_ACCOUNT = "default.credentials"
SYSTEM_CHECK_BATCH = {"tasks": [{"id": "t1", "type": "system_check"}, {"id": "t2", "type": "system_check"}]}


@pytest.fixture
def control_plane(session):
    """Routes every authenticated endpoint to an empty success response."""
    for endpoint in BEARER_ENDPOINTS:
        session.route(endpoint.path, make_response(200, {}))
    session.route(Endpoint.GET_TASKS.path, make_response(200, {"tasks": []}))
    session.route(Endpoint.ENROLL.path, token_response("T1", "R1", agent_id="agent-1"))
    return session


@pytest.fixture
def agent(config, secret_store, host_facts, notifications, control_plane, monkeypatch):
    monkeypatch.setattr(IdentityManager, "discover_device_id", lambda self, use_cache=True: "C02ABC")
    instance = Agent(config, secret_store=secret_store, host_facts=host_facts,
                     notifications=notifications, session=control_plane)
    yield instance
    instance.shutdown()


def events(notifications):
    return [n.event for n in notifications.entries()]


def seed_enrollment(agent):
    registration = agent.identity_manager.build_registration("abc123", device_id="C02ABC",
                                                             hostname="test-mac", platform_name="Darwin")
    agent.identity_manager.store_registration(registration)
    agent.credential_manager.store(make_pair())
    agent.credential_manager.shutdown()


def restore_enrollment(agent):
    seed_enrollment(agent)
    agent.registration = agent.identity_manager.load_registration()
    agent.credential_manager.load(schedule_timers=False)


def task_updates(control_plane):
    return [(c["json"]["task_id"], c["json"]["status"]) for c in control_plane.calls_to(Endpoint.UPDATE_TASK.path)]


class TestEnrollment:
    def test_enroll_authenticates_and_starts_jobs(self, agent, control_plane, notifications):
        assert agent.enroll("abc123") is True

        assert agent.get_state() is ConnectionState.AUTHENTICATED
        assert agent.credential_manager.current().access_token == "T1"
        assert agent.registration.device_id == "C02ABC"
        assert agent.jobs["task_poll"].is_running
        assert "agent_enrolled" in events(notifications)

        body = control_plane.calls_to(Endpoint.ENROLL.path)[0]["json"]
        assert body["token"] == "abc123"
        assert body["deviceInfo"]["serial_number"] == "C02ABC"
        assert body["deviceInfo"]["hostname"] == "test-mac"

    def test_first_poll_runs_immediately(self, agent, control_plane):
        agent.enroll("abc123")

        assert wait_for(lambda: control_plane.calls_to(Endpoint.GET_TASKS.path))
        call = control_plane.calls_to(Endpoint.GET_TASKS.path)[0]
        assert call["params"] == {"agent_id": "agent-1"}
        assert call["headers"]["Authorization"] == "Bearer T1"

    def test_rejected_token_leaves_error_state(self, agent, control_plane, notifications):
        control_plane.route(Endpoint.ENROLL.path,
                            make_response(401, {"error": "Enrollment token has already been used"}))

        assert agent.enroll("abc123") is False

        assert agent.get_state() is ConnectionState.ERROR
        assert agent.credential_manager.current() is None
        assert agent.identity_manager.load_registration() is None
        assert "enrollment_token_required" in events(notifications)
        assert "enrollment_failed" not in events(notifications)
        assert not agent.jobs["task_poll"].is_running

    def test_server_failure_notifies_enrollment_failed(self, agent, control_plane, notifications):
        control_plane.route(Endpoint.ENROLL.path, make_response(500, {"error": "boom"}))

        assert agent.enroll("abc123") is False
        assert agent.get_state() is ConnectionState.ERROR
        assert "enrollment_failed" in events(notifications)
        assert "500" in agent.last_error

    def test_blank_token_is_rejected_without_request(self, agent, control_plane):
        assert agent.enroll("   ") is False
        assert control_plane.calls_to(Endpoint.ENROLL.path) == []

    def test_rejected_credentials_leave_no_registration(self, agent, control_plane, secret_store):
        control_plane.route(Endpoint.ENROLL.path,
                            token_response("T1", "R1", expires_in=timedelta(minutes=-1)))

        assert agent.enroll("abc123") is False

        assert agent.get_state() is ConnectionState.ERROR
        assert agent.identity_manager.load_registration() is None
        assert agent.credential_manager.current() is None
        assert secret_store.get("FleetAgent", CREDENTIALS_ACCOUNT) is None

    def test_registration_write_failure_discards_credentials(self, agent, control_plane, secret_store,
                                                             monkeypatch):
        def locked(record):
            raise SecretStoreError("keychain locked")

        monkeypatch.setattr(agent.identity_manager, "store_registration", locked)

        assert agent.enroll("abc123") is False

        assert agent.get_state() is ConnectionState.ERROR
        assert agent.credential_manager.current() is None
        assert secret_store.get("FleetAgent", CREDENTIALS_ACCOUNT) is None
        assert not agent.jobs["task_poll"].is_running


class TestInitialize:
    def test_without_registration_or_token(self, agent, notifications):
        assert agent.initialize() is False
        assert agent.get_state() is ConnectionState.DISCONNECTED
        assert "enrollment_token_required" in events(notifications)

    def test_enrolls_with_configured_token(self, config_data, secret_store, host_facts, control_plane, monkeypatch):
        config_data["agent"] = {"enrollment_token": "abc123"}
        monkeypatch.setattr(IdentityManager, "discover_device_id", lambda self, use_cache=True: "C02ABC")
        agent = Agent(ConfigManager.from_dict(config_data), secret_store=secret_store,
                      host_facts=host_facts, session=control_plane)
        try:
            assert agent.initialize() is True
            assert agent.get_state() is ConnectionState.AUTHENTICATED
        finally:
            agent.shutdown()

    def test_restores_saved_enrollment(self, agent, control_plane):
        seed_enrollment(agent)

        assert agent.initialize() is True

        assert agent.get_state() is ConnectionState.AUTHENTICATED
        assert control_plane.calls_to(Endpoint.ENROLL.path) == []
        assert wait_for(lambda: control_plane.calls_to(Endpoint.CHECK_STATUS.path))

    def test_registration_without_credentials_is_cleared(self, agent):
        seed_enrollment(agent)
        agent.credential_manager.clear("test")

        assert agent.initialize() is False
        assert agent.identity_manager.load_registration() is None

    def test_load_saved_state_starts_nothing(self, agent, control_plane):
        seed_enrollment(agent)

        assert agent.load_saved_state() is True

        assert agent.get_state() is ConnectionState.AUTHENTICATED
        assert not any(job.is_running for job in agent.jobs.values())
        assert control_plane.calls == []

    def test_overdue_rotation_completes_before_jobs_start(self, agent, control_plane, secret_store):
        seed_enrollment(agent)
        overdue = make_pair(refresh_age=timedelta(days=29, hours=1))
        secret_store.set("FleetAgent", CREDENTIALS_ACCOUNT, json.dumps(overdue.to_dict()))
        control_plane.route(Endpoint.TOKEN_REFRESH.path, token_response("T2", "R2"))

        assert agent.initialize() is True
        assert wait_for(lambda: control_plane.calls_to(Endpoint.GET_TASKS.path))

        paths = [call["path"] for call in control_plane.calls]
        assert paths.index(Endpoint.TOKEN_REFRESH.path) < paths.index(Endpoint.GET_TASKS.path)
        assert agent.credential_manager.current().refresh_token == "R2"
        bearer_paths = {endpoint.path for endpoint in BEARER_ENDPOINTS}
        assert all(call["headers"]["Authorization"] == "Bearer T2"
                   for call in control_plane.calls if call["path"] in bearer_paths)

    def test_rejected_rotation_on_restore_clears_registration(self, agent, control_plane, secret_store):
        seed_enrollment(agent)
        overdue = make_pair(refresh_age=timedelta(days=29, hours=1))
        secret_store.set("FleetAgent", CREDENTIALS_ACCOUNT, json.dumps(overdue.to_dict()))
        control_plane.route(Endpoint.TOKEN_REFRESH.path, make_response(401, {"error": "Invalid refresh token"}))

        assert agent.initialize() is False

        assert agent.get_state() is ConnectionState.DISCONNECTED
        assert agent.identity_manager.load_registration() is None
        assert control_plane.calls_to(Endpoint.GET_TASKS.path) == []


class TestTaskProcessing:
    @pytest.mark.skipif(sys.platform == "win32", reason="requires /bin/bash")
    def test_polled_command_is_reported_completed(self, agent, control_plane, notifications):
        control_plane.route(Endpoint.GET_TASKS.path,
                            make_response(200, {"tasks": [
                                {"id": "t1", "type": "run_command", "payload": {"command": "echo hi"}},
                            ]}),
                            make_response(200, {"tasks": []}))

        agent.enroll("abc123")

        def terminal_updates():
            return [c["json"] for c in control_plane.calls_to(Endpoint.UPDATE_TASK.path)
                    if c["json"]["status"] in ("completed", "failed")]

        assert wait_for(lambda: terminal_updates())
        statuses = [c["json"]["status"] for c in control_plane.calls_to(Endpoint.UPDATE_TASK.path)]
        assert statuses == ["in_progress", "completed"]
        final = terminal_updates()[0]
        assert final["task_id"] == "t1"
        assert final["agent_id"] == "agent-1"
        assert final["result"]["output"] == "hi\n"
        assert "completed_at" in final
        assert wait_for(lambda: agent.tasks_completed == 1)
        assert wait_for(lambda: "task_completed" in events(notifications))

    def test_failed_task_is_counted(self, agent, control_plane):
        seed_enrollment(agent)
        agent.registration = agent.identity_manager.load_registration()
        agent.credential_manager.load(schedule_timers=False)

        result = agent._process_task("agent-1", Task(task_id="t2", type=TaskType.RUN_COMMAND, payload={}))

        assert result.result_payload["error_type"] == "MissingParameter"
        assert agent.tasks_failed == 1

    def test_failed_progress_report_does_not_drop_the_batch(self, agent, control_plane, notifications):
        restore_enrollment(agent)
        control_plane.route(Endpoint.GET_TASKS.path, make_response(200, SYSTEM_CHECK_BATCH))
        control_plane.route(Endpoint.UPDATE_TASK.path, make_response(500, {"error": "boom"}), make_response(200, {}))

        agent._poll_tasks()

        assert task_updates(control_plane) == [
            ("t1", "in_progress"), ("t1", "completed"), ("t2", "in_progress"), ("t2", "completed"),
        ]
        assert agent.tasks_completed == 2
        failures = [n for n in notifications.entries() if n.event == "task_report_failed"]
        assert len(failures) == 1
        assert failures[0].data["task_id"] == "t1"
        assert failures[0].data["status"] == "in_progress"

    def test_failed_result_report_continues_with_next_task(self, agent, control_plane, notifications):
        restore_enrollment(agent)
        control_plane.route(Endpoint.GET_TASKS.path, make_response(200, SYSTEM_CHECK_BATCH))
        control_plane.route(Endpoint.UPDATE_TASK.path, make_response(200, {}), make_response(500, {"error": "boom"}),
                            make_response(200, {}))

        agent._poll_tasks()

        assert task_updates(control_plane)[2:] == [("t2", "in_progress"), ("t2", "completed")]
        assert agent.tasks_completed == 2
        failure = [n for n in notifications.entries() if n.event == "task_report_failed"][0]
        assert failure.data == {"task_id": "t1", "status": "completed", "error_type": "HttpError"}

    def test_unknown_agent_while_reporting_stops_the_batch(self, agent, control_plane):
        restore_enrollment(agent)
        control_plane.route(Endpoint.GET_TASKS.path, make_response(200, SYSTEM_CHECK_BATCH))
        control_plane.route(Endpoint.UPDATE_TASK.path, make_response(404, {"error": "Agent not found"}))

        with pytest.raises(AgentNotFoundError):
            agent._poll_tasks()

        assert task_updates(control_plane) == [("t1", "in_progress")]

    def test_check_in_mode_polls_with_snapshot(self, config_data, secret_store, host_facts, control_plane):
        config_data["agent"] = {"task_poll_mode": "check_in"}
        agent = Agent(ConfigManager.from_dict(config_data), secret_store=secret_store,
                      host_facts=host_facts, session=control_plane)
        control_plane.route(Endpoint.CHECK_IN.path,
                            make_response(200, {"tasks": [{"id": "t1", "type": "system_check"}]}))
        try:
            restore_enrollment(agent)

            agent._poll_tasks()

            assert control_plane.calls_to(Endpoint.GET_TASKS.path) == []
            body = control_plane.calls_to(Endpoint.CHECK_IN.path)[0]["json"]
            assert body["agent_id"] == "agent-1"
            assert body["system_info"]["cpu_usage"] == 12.5
            assert task_updates(control_plane) == [("t1", "in_progress"), ("t1", "completed")]
        finally:
            agent.shutdown()

    def test_unknown_poll_mode_falls_back_to_get(self, config_data, secret_store, host_facts, control_plane):
        config_data["agent"] = {"task_poll_mode": "carrier-pigeon"}
        agent = Agent(ConfigManager.from_dict(config_data), secret_store=secret_store,
                      host_facts=host_facts, session=control_plane)
        try:
            assert agent.task_poll_mode == "poll"
        finally:
            agent.shutdown()


class TestJobErrors:
    def test_agent_not_found_resets(self, agent, control_plane, notifications):
        control_plane.route(Endpoint.GET_TASKS.path, make_response(404, {"error": "Agent not found"}))

        agent.enroll("abc123")

        assert wait_for(lambda: agent.get_state() is ConnectionState.DISCONNECTED)
        assert wait_for(lambda: "agent_not_found" in events(notifications))
        assert agent.credential_manager.current() is None
        assert agent.identity_manager.load_registration() is None
        assert wait_for(lambda: not any(job.is_running for job in agent.jobs.values()))

    def test_rejected_refresh_resets(self, agent, control_plane, notifications):
        control_plane.route(Endpoint.CHECK_STATUS.path, make_response(401, {"error": "expired"}))
        control_plane.route(Endpoint.TOKEN_REFRESH.path, make_response(401, {"error": "Invalid refresh token"}))

        agent.enroll("abc123")

        assert wait_for(lambda: agent.get_state() is ConnectionState.DISCONNECTED)
        assert agent.credential_manager.current() is None
        assert wait_for(lambda: "heartbeat_failed" in events(notifications))

    def test_transient_errors_keep_jobs_running(self, agent, control_plane, notifications):
        control_plane.route(Endpoint.TELEMETRY.path, make_response(503, {"error": "unavailable"}))

        agent.enroll("abc123")

        assert wait_for(lambda: "telemetry_failed" in events(notifications))
        assert agent.get_state() is ConnectionState.AUTHENTICATED
        assert agent.jobs["telemetry"].is_running


class TestReportsAndStatus:
    def test_telemetry_sends_usage_and_processes(self, agent, control_plane):
        seed_enrollment(agent)
        agent.registration = agent.identity_manager.load_registration()
        agent.credential_manager.load(schedule_timers=False)

        assert agent.force_telemetry_report() is True

        telemetry = control_plane.calls_to(Endpoint.TELEMETRY.path)[0]["json"]
        assert telemetry["cpu_usage"] == 12.5
        assert telemetry["serial_number"] == "C02ABC"
        processes = control_plane.calls_to(Endpoint.PROCESS_TELEMETRY.path)[0]["json"]
        assert processes["processes"][0]["name"] == "launchd"
        assert agent.last_telemetry is not None

    def test_device_data(self, agent, control_plane):
        seed_enrollment(agent)
        agent.registration = agent.identity_manager.load_registration()
        agent.credential_manager.load(schedule_timers=False)

        assert agent.send_device_data_now() is True

        body = control_plane.calls_to(Endpoint.REPORT_DATA.path)[0]["json"]
        assert body["device_data"]["hardware"]["cpu_model"] == "Apple M2"
        assert body["device_data"]["hostname"] == "test-mac"

    def test_test_connection_requires_enrollment(self, agent):
        assert agent.test_connection() is False

    def test_force_token_refresh(self, agent, control_plane):
        seed_enrollment(agent)
        agent.credential_manager.load(schedule_timers=False)
        control_plane.route(Endpoint.TOKEN_REFRESH.path, token_response("T2", "R1"))

        assert agent.force_token_refresh() is True
        assert agent.credential_manager.current().access_token == "T2"

    def test_force_token_refresh_failure_is_recorded(self, agent):
        seed_enrollment(agent)
        agent.credential_manager.load(schedule_timers=False)

        assert agent.force_token_refresh() is False
        assert "404" in agent.last_error
        assert agent.credential_manager.current().access_token == "T1"

    def test_status_summary(self, agent):
        agent.enroll("abc123")

        status = agent.get_status()
        summary = agent.get_status_summary()

        assert status["state"] == "authenticated"
        assert status["credentials"]["agent_id"] == "agent-1"
        assert "access_token" not in status["credentials"]
        assert "Agent ID:       agent-1" in summary
        assert agent.is_healthy()

    def test_complete_reset(self, agent, notifications):
        agent.enroll("abc123")

        agent.complete_reset()

        assert agent.get_state() is ConnectionState.DISCONNECTED
        assert len(notifications) == 0
        assert agent.tasks_completed == 0
        assert not agent.is_healthy()

    def test_shutdown_is_idempotent(self, agent):
        agent.enroll("abc123")
        agent.shutdown()
        agent.shutdown()

        assert not any(job.is_running for job in agent.jobs.values())
