import json

import httpx
import pytest

from services.action_dispatcher_service import DefaultActionDispatcher
from services.internal.user_service import UserService
from models.flow_node_data import ActionNodeConfig
from models.flow_user_context import FlowUserContext
from models.dispatch_data import ActionDispatchContext

EMAIL_URL = "http://email.test/send"
NOTIFY_URL = "http://notify.test/send"


class Recorder:
    """MockTransport handler that records requests and replays a response"""

    def __init__(self, status_code=200, payload=None, error=None):
        self.requests = []
        self.status_code = status_code
        self.payload = payload if payload is not None else {"status": "queued"}
        self.error = error

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return httpx.Response(self.status_code, json=self.payload)


@pytest.fixture
def user_service(log_util, store):
    return UserService(log_util=log_util, flow_store=store)


def make_dispatcher(log_util, user_service, recorder, **urls):
    return DefaultActionDispatcher(
        log_util=log_util,
        user_service=user_service,
        email_service_url=urls.get("email", EMAIL_URL),
        notification_service_url=urls.get("notification", NOTIFY_URL),
        task_service_url=urls.get("task", ""),
        timeout=5,
        transport=httpx.MockTransport(recorder)
    )


def context(email="ada@example.com"):
    return ActionDispatchContext(
        user=FlowUserContext(user_id="u-1", email=email, account_id="acc-1"),
        flow_id="flow-1",
        enrollment_id="enr-1",
        node_id="node-1"
    )


@pytest.mark.asyncio
async def test_email_is_posted_to_the_email_service(log_util, user_service):
    recorder = Recorder()
    dispatcher = make_dispatcher(log_util, user_service, recorder)

    result = await dispatcher.dispatch(ActionNodeConfig(kind="send_email", emailSubject="Hi", emailBody="Welcome"), context())

    assert result.ok is True
    request = recorder.requests[0]
    body = json.loads(request.content)
    assert str(request.url) == EMAIL_URL
    assert request.headers["Idempotency-Key"] == "enr-1:node-1"
    assert body["to"] == "ada@example.com"
    assert body["subject"] == "Hi"
    assert body["enrollment_id"] == "enr-1"


@pytest.mark.asyncio
async def test_email_requires_an_address(log_util, user_service):
    recorder = Recorder()
    dispatcher = make_dispatcher(log_util, user_service, recorder)

    result = await dispatcher.dispatch(ActionNodeConfig(kind="send_email"), context(email=None))

    assert result.ok is False
    assert recorder.requests == []


@pytest.mark.asyncio
async def test_channel_error_status_is_a_failure(log_util, user_service):
    dispatcher = make_dispatcher(log_util, user_service, Recorder(status_code=503))

    result = await dispatcher.dispatch(ActionNodeConfig(kind="send_notification", notificationTitle="Hey"), context())

    assert result.ok is False
    assert "503" in result.error


@pytest.mark.asyncio
async def test_transport_errors_are_failures(log_util, user_service):
    dispatcher = make_dispatcher(log_util, user_service, Recorder(error=httpx.ConnectError("refused")))

    result = await dispatcher.dispatch(ActionNodeConfig(kind="send_notification"), context())

    assert result.ok is False
    assert "refused" in result.error


@pytest.mark.asyncio
async def test_unconfigured_channel_is_skipped(log_util, user_service):
    recorder = Recorder()
    dispatcher = make_dispatcher(log_util, user_service, recorder)

    result = await dispatcher.dispatch(ActionNodeConfig(kind="create_task", taskTitle="Call them"), context())

    assert result.ok is True
    assert result.output["status"] == "skipped"
    assert recorder.requests == []


@pytest.mark.asyncio
async def test_webhook_sends_json_payload(log_util, user_service):
    recorder = Recorder()
    dispatcher = make_dispatcher(log_util, user_service, recorder)

    result = await dispatcher.dispatch(ActionNodeConfig(
        kind="send_webhook",
        webhookUrl="http://hooks.test/in",
        webhookMethod="PUT",
        webhookHeaders={"X-Token": "abc"},
        webhookPayload='{"user": "u-1"}'
    ), context())

    request = recorder.requests[0]
    assert result.ok is True
    assert request.method == "PUT"
    assert request.headers["X-Token"] == "abc"
    assert json.loads(request.content) == {"user": "u-1"}


@pytest.mark.asyncio
async def test_api_call_stores_response_variable(log_util, user_service):
    dispatcher = make_dispatcher(log_util, user_service, Recorder(payload={"score": 7}))

    result = await dispatcher.dispatch(ActionNodeConfig(
        kind="api_call", apiUrl="http://api.test/score", apiMethod="GET", apiResponseVariable="score"
    ), context())

    assert result.ok is True
    assert result.variables == {"score": {"score": 7}}


@pytest.mark.asyncio
async def test_profile_actions_update_the_user(log_util, user_service):
    dispatcher = make_dispatcher(log_util, user_service, Recorder())

    await dispatcher.dispatch(ActionNodeConfig(kind="add_tag", tag="vip"), context())
    await dispatcher.dispatch(ActionNodeConfig(kind="add_tag", tag="beta"), context())
    await dispatcher.dispatch(ActionNodeConfig(kind="remove_tag", tag="beta"), context())
    await dispatcher.dispatch(ActionNodeConfig(kind="update_user", userProperties={"plan": "pro"}), context())
    user = await user_service.get_user_context("u-1")

    assert user.tags == ["vip"]
    assert user.properties == {"plan": "pro"}


@pytest.mark.asyncio
async def test_set_variable_returns_variables(log_util, user_service):
    dispatcher = make_dispatcher(log_util, user_service, Recorder())

    result = await dispatcher.dispatch(ActionNodeConfig(kind="set_variable", variableKey="code", variableValue="SAVE10"), context())

    assert result.ok is True
    assert result.variables == {"code": "SAVE10"}
