"""
Tests for NetworkClient: authorization, retries, the 401 loop and error mapping.
"""
import pytest
import requests

from fleet_agent.communication import Endpoint, NetworkClient
from fleet_agent.config import ConfigManager
from fleet_agent.errors import (
    AgentNotFoundError,
    CredentialError,
    EnrollmentError,
    EnrollmentErrorKind,
    HttpError,
    ProtocolError,
    ReEnrollmentRequiredError,
    TransportError,
)
from fleet_agent.version import __version__

from tests.helpers import make_pair, make_response, token_response

TASKS_PATH = Endpoint.GET_TASKS.path
REFRESH_PATH = Endpoint.TOKEN_REFRESH.path
ENROLL_PATH = Endpoint.ENROLL.path


@pytest.fixture
def authenticated(credential_manager):
    credential_manager.store(make_pair())
    return credential_manager


class TestRequestConstruction:
    def test_requires_server_url(self, config):
        config._config_data["server_url"] = ""
        with pytest.raises(ValueError):
            NetworkClient(config)

    def test_service_key_headers(self, network_client, session):
        session.route(ENROLL_PATH, make_response(200, {"ok": True}))

        network_client.request(Endpoint.ENROLL, {"token": "abc123"})

        call = session.calls_to(ENROLL_PATH)[0]
        assert call["method"] == "POST"
        assert call["json"] == {"token": "abc123"}
        assert call["headers"]["Authorization"] == "Bearer service-key"
        assert call["headers"]["apikey"] == "service-key"
        assert call["headers"]["User-Agent"] == f"FleetAgent/{__version__}"

    def test_no_service_key_sends_no_authorization(self, config_data, session):
        config_data["network"]["service_api_key"] = ""
        client = NetworkClient(ConfigManager.from_dict(config_data), session=session)
        session.route(ENROLL_PATH, make_response(200, {}))

        client.request(Endpoint.ENROLL, {"token": "abc123"})

        assert "Authorization" not in session.calls_to(ENROLL_PATH)[0]["headers"]

    def test_bearer_get_sends_query_params(self, network_client, authenticated, session):
        session.route(TASKS_PATH, make_response(200, {"tasks": []}))

        network_client.request(Endpoint.GET_TASKS, params={"agent_id": "agent-1"})

        call = session.calls_to(TASKS_PATH)[0]
        assert call["method"] == "GET"
        assert call["params"] == {"agent_id": "agent-1"}
        assert call["headers"]["Authorization"] == "Bearer T1"
        assert "json" not in call

    def test_bearer_without_credentials(self, network_client, credential_manager, session):
        with pytest.raises(CredentialError):
            network_client.request(Endpoint.GET_TASKS)
        assert session.calls == []


class TestResponseHandling:
    def test_empty_response_returns_empty_dict(self, network_client, authenticated, session):
        session.route(Endpoint.CHECK_IN.path, make_response(204))
        assert network_client.request(Endpoint.CHECK_IN, {"agent_id": "agent-1"}) == {}

    def test_non_json_body_raises_protocol_error(self, network_client, authenticated, session):
        session.route(TASKS_PATH, make_response(200, text="<html>oops</html>"))
        with pytest.raises(ProtocolError):
            network_client.request(Endpoint.GET_TASKS)

    def test_json_array_raises_protocol_error(self, network_client, authenticated, session):
        session.route(TASKS_PATH, make_response(200, [1, 2, 3]))
        with pytest.raises(ProtocolError):
            network_client.request(Endpoint.GET_TASKS)

    def test_404_on_bearer_endpoint_is_agent_not_found(self, network_client, authenticated, session):
        session.route(TASKS_PATH, make_response(404, {"error": "Agent not found"}))

        with pytest.raises(AgentNotFoundError) as exc_info:
            network_client.request(Endpoint.GET_TASKS)

        assert exc_info.value.status == 404

    def test_server_error_is_http_error(self, network_client, authenticated, session):
        session.route(TASKS_PATH, make_response(500, {"error": "boom"}))

        with pytest.raises(HttpError) as exc_info:
            network_client.request(Endpoint.GET_TASKS)

        assert exc_info.value.status == 500
        assert "boom" in exc_info.value.body
        assert not isinstance(exc_info.value, AgentNotFoundError)


class TestTransportRetries:
    def test_retries_then_succeeds(self, network_client, authenticated, session):
        session.route(TASKS_PATH,
                      requests.exceptions.ConnectionError("down"),
                      requests.exceptions.Timeout("slow"),
                      make_response(200, {"tasks": []}))

        assert network_client.request(Endpoint.GET_TASKS) == {"tasks": []}
        assert len(session.calls_to(TASKS_PATH)) == 3

    def test_gives_up_after_all_attempts(self, network_client, authenticated, session):
        session.route(TASKS_PATH, requests.exceptions.ConnectionError("down"))

        with pytest.raises(TransportError) as exc_info:
            network_client.request(Endpoint.GET_TASKS)

        assert exc_info.value.attempts == 4
        assert len(session.calls_to(TASKS_PATH)) == 4

    def test_other_request_errors_are_not_retried(self, network_client, authenticated, session):
        session.route(TASKS_PATH, requests.exceptions.InvalidURL("bad url"))

        with pytest.raises(TransportError):
            network_client.request(Endpoint.GET_TASKS)

        assert len(session.calls_to(TASKS_PATH)) == 1


class TestUnauthorizedLoop:
    def test_refresh_then_retry_succeeds(self, network_client, authenticated, session):
        session.route(TASKS_PATH, make_response(401, {"error": "expired"}), make_response(200, {"tasks": []}))
        session.route(REFRESH_PATH, token_response("T2", "R2"))

        assert network_client.request(Endpoint.GET_TASKS) == {"tasks": []}

        calls = session.calls_to(TASKS_PATH)
        assert [c["headers"]["Authorization"] for c in calls] == ["Bearer T1", "Bearer T2"]
        assert len(session.calls_to(REFRESH_PATH)) == 1

    def test_refresh_budget_exhausted_clears_credentials(self, network_client, authenticated, session):
        issued = iter(range(2, 100))

        def refresh(call):
            n = next(issued)
            return token_response(f"T{n}", f"R{n}")

        session.route(TASKS_PATH, make_response(401, {"error": "expired"}))
        session.route(REFRESH_PATH, refresh)
        reasons = []
        authenticated.add_clear_listener(reasons.append)

        with pytest.raises(ReEnrollmentRequiredError):
            network_client.request(Endpoint.GET_TASKS)

        assert len(session.calls_to(REFRESH_PATH)) == 3
        assert len(session.calls_to(TASKS_PATH)) == 4
        assert authenticated.current() is None
        assert len(reasons) == 1

    def test_rejected_refresh_requires_reenrollment(self, network_client, authenticated, session):
        session.route(TASKS_PATH, make_response(401, {"error": "expired"}))
        session.route(REFRESH_PATH, make_response(401, {"error": "Invalid refresh token"}))

        with pytest.raises(ReEnrollmentRequiredError):
            network_client.request(Endpoint.GET_TASKS)

        assert authenticated.current() is None

    def test_401_on_service_key_endpoint_is_not_retried(self, network_client, session):
        session.route(ENROLL_PATH, make_response(401, {"error": "bad key"}))

        with pytest.raises(HttpError) as exc_info:
            network_client.request(Endpoint.ENROLL, {"token": "abc123"})

        assert exc_info.value.status == 401
        assert len(session.calls_to(ENROLL_PATH)) == 1


class TestEnrollmentErrors:
    def test_used_token_notifies_once_per_cooldown(self, network_client, session, notifications):
        session.route(ENROLL_PATH, make_response(401, {"error": "Enrollment token has already been used"}))

        with pytest.raises(EnrollmentError) as first:
            network_client.request(Endpoint.ENROLL, {"token": "abc123"})
        with pytest.raises(EnrollmentError) as second:
            network_client.request(Endpoint.ENROLL, {"token": "abc123"})

        assert first.value.kind is EnrollmentErrorKind.TOKEN_INVALID
        assert first.value.rate_limited is False
        assert second.value.rate_limited is True
        events = [n.event for n in notifications.entries()]
        assert events.count("enrollment_token_required") == 1

    def test_reset_counters_clears_cooldown(self, network_client, session, notifications):
        session.route(ENROLL_PATH, make_response(401, {"error": "Invalid enrollment token"}))

        with pytest.raises(EnrollmentError):
            network_client.request(Endpoint.ENROLL, {"token": "abc123"})
        network_client.reset_counters()
        with pytest.raises(EnrollmentError) as again:
            network_client.request(Endpoint.ENROLL, {"token": "abc123"})

        assert again.value.rate_limited is False
        assert len(notifications) == 2

    def test_existing_hostname(self, network_client, session, notifications):
        session.route(ENROLL_PATH, make_response(409, {"error": "Agent with this hostname already exists"}))

        with pytest.raises(EnrollmentError) as exc_info:
            network_client.request(Endpoint.ENROLL, {"token": "abc123"})

        assert exc_info.value.kind is EnrollmentErrorKind.AGENT_EXISTS
        assert notifications.latest()[0].event == "agent_already_exists"

    def test_unrecognized_conflict_is_plain_http_error(self, network_client, session):
        session.route(ENROLL_PATH, make_response(409, {"error": "something else"}))

        with pytest.raises(HttpError) as exc_info:
            network_client.request(Endpoint.ENROLL, {"token": "abc123"})

        assert not isinstance(exc_info.value, EnrollmentError)
