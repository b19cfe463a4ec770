from abc import ABC, abstractmethod
from typing import Optional, Dict, Any
import json
import httpx

# Utils
from utils.log_utils import LogUtil

# Services
from services.internal.user_service import UserService

# Models
from models.flow_node_data import ActionNodeConfig
from models.dispatch_data import ActionDispatchContext, DispatchResult


class ActionDispatcher(ABC):
    """
    Performs the side effect of an action node. The engine resolves
    templates before calling dispatch and never performs the effect itself.
    Implementations report failure through DispatchResult.ok; an exception
    is treated as a failed attempt as well.
    """

    @abstractmethod
    async def dispatch(self, config: ActionNodeConfig, context: ActionDispatchContext) -> DispatchResult: ...


def _parse_body(body: Optional[str]) -> Dict[str, Any]:
    """
    Request kwargs for a templated body: JSON when it parses, raw text otherwise
    """
    if not body:
        return {}
    try:
        return {"json": json.loads(body)}
    except ValueError:
        return {"content": body}


def _response_value(response: httpx.Response) -> Any:
    if response.headers.get("content-type", "").startswith("application/json"):
        try:
            return response.json()
        except ValueError:
            pass
    return response.text


class DefaultActionDispatcher(ActionDispatcher):
    """
    Dispatcher backed by HTTP channel services and the user profile store.
    """
    def __init__(
        self,
        log_util: LogUtil,
        user_service: UserService,
        email_service_url: str = "",
        notification_service_url: str = "",
        task_service_url: str = "",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.log_util = log_util
        self.user_service = user_service
        self.email_service_url = email_service_url
        self.notification_service_url = notification_service_url
        self.task_service_url = task_service_url
        self.timeout = timeout
        self.transport = transport

    async def dispatch(self, config: ActionNodeConfig, context: ActionDispatchContext) -> DispatchResult:
        self.log_util.info(
            service_name="ActionDispatcher",
            message=f"[DISPATCH] {config.kind} for user {context.user.user_id}, flow {context.flow_id}, node {context.node_id}"
        )
        kind = config.kind

        if kind == "send_email":
            if not context.user.email:
                return DispatchResult(ok=False, error="User has no email address")
            return await self._post_to_channel_service(
                service_url=self.email_service_url,
                channel="email",
                payload={
                    "to": context.user.email,
                    "subject": config.emailSubject,
                    "body": config.emailBody,
                    "from_name": config.emailFromName,
                    "reply_to": config.emailReplyTo,
                    "template_id": config.emailTemplateId,
                },
                context=context
            )
        elif kind == "send_notification":
            return await self._post_to_channel_service(
                service_url=self.notification_service_url,
                channel="notification",
                payload={
                    "title": config.notificationTitle,
                    "body": config.notificationBody,
                    "channel": config.notificationChannel,
                },
                context=context
            )
        elif kind == "create_task":
            return await self._post_to_channel_service(
                service_url=self.task_service_url,
                channel="task",
                payload={
                    "title": config.taskTitle,
                    "assignee": config.taskAssignee,
                    "priority": config.taskPriority or "medium",
                },
                context=context
            )
        elif kind == "send_webhook":
            if not config.webhookUrl:
                return DispatchResult(ok=False, error="Webhook URL is not configured")
            return await self._http_request(
                method=config.webhookMethod,
                url=config.webhookUrl,
                headers=config.webhookHeaders,
                body=config.webhookPayload,
                label="webhook"
            )
        elif kind == "api_call":
            if not config.apiUrl:
                return DispatchResult(ok=False, error="API URL is not configured")
            result = await self._http_request(
                method=config.apiMethod,
                url=config.apiUrl,
                headers=config.apiHeaders,
                body=config.apiBodyTemplate,
                label="api call"
            )
            if result.ok and config.apiResponseVariable:
                result.variables = {config.apiResponseVariable: (result.output or {}).get("response")}
            return result
        elif kind == "update_user":
            if not config.userProperties:
                return DispatchResult(ok=True, output={"updated": []})
            await self.user_service.update_properties(context.user.user_id, dict(config.userProperties))
            return DispatchResult(ok=True, output={"updated": sorted(config.userProperties.keys())})
        elif kind == "add_tag":
            if not config.tag:
                return DispatchResult(ok=False, error="Tag is not configured")
            await self.user_service.add_tags(context.user.user_id, [config.tag])
            return DispatchResult(ok=True, output={"tag": config.tag})
        elif kind == "remove_tag":
            if not config.tag:
                return DispatchResult(ok=False, error="Tag is not configured")
            await self.user_service.remove_tag(context.user.user_id, config.tag)
            return DispatchResult(ok=True, output={"tag": config.tag})
        elif kind == "set_variable":
            if not config.variableKey:
                return DispatchResult(ok=False, error="Variable key is not configured")
            value = config.variableValue if config.variableValue is not None else ""
            return DispatchResult(ok=True, output={"set": config.variableKey}, variables={config.variableKey: value})

        return DispatchResult(ok=False, error=f"Unsupported action kind: {kind}")

    async def _post_to_channel_service(
        self,
        service_url: str,
        channel: str,
        payload: Dict[str, Any],
        context: ActionDispatchContext
    ) -> DispatchResult:
        if not service_url:
            # Nothing to deliver through; the step still counts as done
            self.log_util.warning(
                service_name="ActionDispatcher",
                message=f"[DISPATCH] No {channel} service configured, skipping delivery for user {context.user.user_id}"
            )
            return DispatchResult(ok=True, output={"status": "skipped", "reason": f"no {channel} service configured"})

        request_body = {
            **payload,
            "user_id": context.user.user_id,
            "account_id": context.user.account_id,
            "flow_id": context.flow_id,
            "enrollment_id": context.enrollment_id,
            "node_id": context.node_id,
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(
                    service_url,
                    json=request_body,
                    headers={
                        "Content-Type": "application/json",
                        # Lets the channel service drop redelivered steps
                        "Idempotency-Key": f"{context.enrollment_id}:{context.node_id}"
                    }
                )
                if response.is_success:
                    return DispatchResult(ok=True, output={"status_code": response.status_code, "response": _response_value(response)})

                self.log_util.error(
                    service_name="ActionDispatcher",
                    message=f"[DISPATCH] {channel} service returned error: {response.status_code} - {response.text}"
                )
                return DispatchResult(ok=False, error=f"{channel} service error: {response.status_code}")
        except httpx.TimeoutException:
            self.log_util.error(
                service_name="ActionDispatcher",
                message=f"[DISPATCH] Timeout calling {channel} service"
            )
            return DispatchResult(ok=False, error=f"Timeout calling {channel} service")
        except httpx.HTTPError as e:
            self.log_util.error(
                service_name="ActionDispatcher",
                message=f"[DISPATCH] Error calling {channel} service: {str(e)}"
            )
            return DispatchResult(ok=False, error=f"Error calling {channel} service: {str(e)}")

    async def _http_request(
        self,
        method: str,
        url: str,
        headers: Dict[str, str],
        body: Optional[str],
        label: str
    ) -> DispatchResult:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.request(method, url, headers=headers, **_parse_body(body))
                if response.is_success:
                    return DispatchResult(ok=True, output={"status_code": response.status_code, "response": _response_value(response)})

                self.log_util.error(
                    service_name="ActionDispatcher",
                    message=f"[DISPATCH] {label} to {url} returned error: {response.status_code} - {response.text}"
                )
                return DispatchResult(ok=False, error=f"{label} returned HTTP {response.status_code}")
        except httpx.TimeoutException:
            self.log_util.error(
                service_name="ActionDispatcher",
                message=f"[DISPATCH] Timeout calling {url}"
            )
            return DispatchResult(ok=False, error=f"Timeout calling {url}")
        except httpx.HTTPError as e:
            self.log_util.error(
                service_name="ActionDispatcher",
                message=f"[DISPATCH] Error calling {url}: {str(e)}"
            )
            return DispatchResult(ok=False, error=f"Error calling {url}: {str(e)}")
