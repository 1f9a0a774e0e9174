"""Provider 共用的 HTTP 调用与错误分类。"""

from typing import Any, Dict, Optional

import httpx

from pm_agent.domain.exceptions import ConnectivityError, HttpError, LlmTimeoutError, MalformedResponseError


async def request_json(
    method: str,
    url: str,
    *,
    timeout: Optional[float],
    payload: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """发送请求并返回解析后的 JSON 对象。

    错误分类：
    - 连接失败 / 连接超时 -> ConnectivityError
    - 读写超时 -> LlmTimeoutError
    - 非 2xx -> HttpError(status)
    - 非 JSON 或非对象 -> MalformedResponseError
    """
    try:
        async with httpx.AsyncClient(timeout=timeout, trust_env=False) as client:
            if method == "GET":
                resp = await client.get(url)
            else:
                resp = await client.post(
                    url,
                    json=payload,
                    headers={"Content-Type": "application/json"},
                )
    except (httpx.ConnectError, httpx.ConnectTimeout) as e:
        raise ConnectivityError(code="CONNECTIVITY_ERROR", message=f"Cannot reach {url}: {e}", url=url)
    except httpx.TimeoutException as e:
        raise LlmTimeoutError(code="TIMEOUT", message=f"Request to {url} timed out: {e}", url=url)
    except httpx.RequestError as e:
        raise ConnectivityError(code="CONNECTIVITY_ERROR", message=str(e) or repr(e), url=url)

    if resp.status_code >= 400:
        text = resp.text
        raise HttpError(resp.status_code, f"HTTP {resp.status_code} from {url}", body=text, url=url)
    try:
        data = resp.json()
    except ValueError:
        raise MalformedResponseError(code="MALFORMED_RESPONSE", message=f"Non-JSON response from {url}", url=url)
    if not isinstance(data, dict):
        raise MalformedResponseError(code="MALFORMED_RESPONSE", message=f"Unexpected payload from {url}", url=url)
    return data
