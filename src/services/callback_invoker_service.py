"""
Callback Invoker Service
Performs one outbound HTTP call to a tenant-configured callback and records it.
"""
import json
import time
import httpx
from typing import Any, Dict, Optional

from utils.log_utils import LogUtil
from utils.environment_utils import EnvironmentUtils
from database.flow_db import FlowDB
from models.callback_data import CallbackData, CallbackLogData
from models.execution_data import CallbackResult


class CallbackInvokerService:
    def __init__(self, log_util: LogUtil, environment_utils: EnvironmentUtils, flow_db: FlowDB):
        self.log_util = log_util
        self.flow_db = flow_db
        self.timeout_seconds = float(environment_utils.get_env_variable("CALLBACK_TIMEOUT_SECONDS"))

    async def invoke(self, callback_id: str, payload: Dict[str, Any]) -> CallbackResult:
        """
        Call the callback once. Every outcome, including a missing or inactive
        callback, is written to the callback log and returned; nothing is raised.
        """
        callback = await self.flow_db.get_callback(callback_id)
        if callback is None or not callback.is_active:
            reason = "Callback not found" if callback is None else "Callback is inactive"
            self.log_util.warning(
                service_name="CallbackInvokerService",
                message=f"[CALLBACK] {reason}: {callback_id}"
            )
            result = CallbackResult(success=False, error=reason)
            await self._record(callback_id, payload, result)
            return result

        result = await self._call(callback, payload)
        await self._record(callback_id, payload, result)
        return result

    async def _call(self, callback: CallbackData, payload: Dict[str, Any]) -> CallbackResult:
        started = time.monotonic()
        headers = {"Content-Type": "application/json"}
        headers.update(callback.headers or {})
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                response = await client.request(
                    callback.method.upper(),
                    callback.url,
                    json=payload,
                    headers=headers
                )
            elapsed_ms = int((time.monotonic() - started) * 1000)

            try:
                body: Any = response.json()
            except ValueError:
                body = response.text

            success = 200 <= response.status_code < 300
            log_method = self.log_util.info if success else self.log_util.warning
            log_method(
                service_name="CallbackInvokerService",
                message=f"[CALLBACK] {callback.method.upper()} {callback.url} -> {response.status_code} in {elapsed_ms}ms"
            )
            return CallbackResult(
                success=success,
                status=response.status_code,
                body=body,
                error=None if success else f"HTTP {response.status_code}",
                elapsed_ms=elapsed_ms
            )

        except httpx.TimeoutException:
            elapsed_ms = int((time.monotonic() - started) * 1000)
            self.log_util.error(
                service_name="CallbackInvokerService",
                message=f"[CALLBACK] Timeout after {self.timeout_seconds}s calling {callback.url}"
            )
            return CallbackResult(success=False, error="Timeout", elapsed_ms=elapsed_ms)
        except httpx.HTTPError as e:
            elapsed_ms = int((time.monotonic() - started) * 1000)
            self.log_util.error(
                service_name="CallbackInvokerService",
                message=f"[CALLBACK] Error calling {callback.url}: {str(e)}"
            )
            return CallbackResult(success=False, error=str(e), elapsed_ms=elapsed_ms)

    async def _record(self, callback_id: str, payload: Dict[str, Any], result: CallbackResult) -> Optional[CallbackLogData]:
        response_body = None
        if result.body is not None:
            response_body = result.body if isinstance(result.body, str) else json.dumps(result.body, default=str)
        return await self.flow_db.save_callback_log(
            CallbackLogData(
                callback_id=callback_id,
                request_payload=payload,
                response_status=result.status,
                response_body=response_body,
                elapsed_ms=result.elapsed_ms,
                error=result.error
            )
        )
