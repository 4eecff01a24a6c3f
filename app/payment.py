"""x402 支付网关。

受保护路由在进入业务处理前必须携带 ``X-PAYMENT`` 头；校验与结算全部交给外部
facilitator 完成，网关本身不保存任何支付状态。
"""
import asyncio
import base64
import json
import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Tuple

import aiohttp
from fastapi import Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

from .errors import ConfigurationError, FacilitatorError, PaymentRequiredError

logger = logging.getLogger(__name__)

X402_VERSION = 1
PAYMENT_HEADER = "X-PAYMENT"
PAYMENT_RESPONSE_HEADER = "X-PAYMENT-RESPONSE"

# 各网络上的 USDC 合约及其 EIP-712 domain
USDC_DECIMALS = 6
NETWORK_ASSETS: Dict[str, Dict[str, Any]] = {
    "base-sepolia": {
        "address": "0x036CbD53842c5426634e7929541eC2318f3dCF7e",
        "eip712": {"name": "USDC", "version": "2"},
    },
    "base": {
        "address": "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913",
        "eip712": {"name": "USD Coin", "version": "2"},
    },
    "avalanche-fuji": {
        "address": "0x5425890298aed601595a70AB815c96711a31Bc65",
        "eip712": {"name": "USD Coin", "version": "2"},
    },
    "avalanche": {
        "address": "0xB97EF9Ef8734C71904D8002F8b6Bc66Dd9c48a6E",
        "eip712": {"name": "USD Coin", "version": "2"},
    },
}


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PaymentRequirements(_CamelModel):
    scheme: str = "exact"
    network: str
    max_amount_required: str
    resource: str
    description: str = ""
    mime_type: str = ""
    pay_to: str
    max_timeout_seconds: int = 60
    asset: str
    output_schema: Optional[Dict[str, Any]] = None
    extra: Optional[Dict[str, Any]] = None


class VerifyResponse(_CamelModel):
    is_valid: bool
    invalid_reason: Optional[str] = None
    payer: Optional[str] = None


class SettleResponse(_CamelModel):
    success: bool
    error_reason: Optional[str] = None
    transaction: Optional[str] = None
    network: Optional[str] = None
    payer: Optional[str] = None


@dataclass(frozen=True)
class RouteTerms:
    price: str
    description: str = ""
    mime_type: str = ""


def price_to_atomic_units(price: str, decimals: int = USDC_DECIMALS) -> str:
    """'$0.0001' -> '100'（USDC 6 位小数）。"""
    try:
        amount = Decimal(price.strip().lstrip("$"))
    except (InvalidOperation, AttributeError) as e:
        raise ConfigurationError(f"Invalid price: {price!r}") from e
    if amount <= 0:
        raise ConfigurationError(f"Price must be positive: {price!r}")
    return str(int(amount.scaleb(decimals)))


def decode_payment_header(value: str) -> Dict[str, Any]:
    payload = json.loads(base64.b64decode(value, validate=True).decode("utf-8"))
    if not isinstance(payload, dict):
        raise ValueError("payment payload must be a JSON object")
    return payload


def encode_header(data: Dict[str, Any]) -> str:
    return base64.b64encode(json.dumps(data).encode("utf-8")).decode("ascii")


class FacilitatorClient:
    def __init__(self, url: str, timeout: float = 30.0):
        self.url = url.rstrip("/")
        self.timeout = timeout

    async def _post(self, endpoint: str, payload: Dict[str, Any], requirements: PaymentRequirements) -> dict:
        body = {
            "x402Version": payload.get("x402Version", X402_VERSION),
            "paymentPayload": payload,
            "paymentRequirements": requirements.model_dump(by_alias=True, exclude_none=True),
        }
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    f"{self.url}/{endpoint}",
                    json=body,
                    timeout=aiohttp.ClientTimeout(total=self.timeout),
                ) as response:
                    if response.status != 200:
                        text = await response.text()
                        raise FacilitatorError(f"facilitator /{endpoint} returned {response.status}: {text}")
                    data = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise FacilitatorError(f"facilitator /{endpoint} unreachable: {e}") from e
        except ValueError as e:
            raise FacilitatorError(f"facilitator /{endpoint} returned invalid JSON: {e}") from e
        return data

    async def verify(self, payload: Dict[str, Any], requirements: PaymentRequirements) -> VerifyResponse:
        data = await self._post("verify", payload, requirements)
        try:
            return VerifyResponse.model_validate(data)
        except ValidationError as e:
            raise FacilitatorError(f"facilitator /verify returned unexpected body: {data!r}") from e

    async def settle(self, payload: Dict[str, Any], requirements: PaymentRequirements) -> SettleResponse:
        data = await self._post("settle", payload, requirements)
        try:
            return SettleResponse.model_validate(data)
        except ValidationError as e:
            raise FacilitatorError(f"facilitator /settle returned unexpected body: {data!r}") from e


class PaymentGate:
    """HTTP 中间件：对 routes 中的 "METHOD /path" 要求先付款。"""

    def __init__(self, pay_to: str, network: str, routes: Dict[str, RouteTerms], facilitator: FacilitatorClient):
        if network not in NETWORK_ASSETS:
            raise ConfigurationError(
                f"Unsupported network {network!r}, expected one of {', '.join(sorted(NETWORK_ASSETS))}",
                fields=["NETWORK"],
            )
        self.pay_to = pay_to
        self.network = network
        self.facilitator = facilitator
        self.routes = {key.upper(): terms for key, terms in routes.items()}
        # 启动时换算价格，非法价格直接报配置错误
        self._amounts = {key: price_to_atomic_units(terms.price) for key, terms in self.routes.items()}

    def requirements_for(self, route_key: str, resource: str) -> List[PaymentRequirements]:
        terms = self.routes[route_key]
        asset = NETWORK_ASSETS[self.network]
        return [
            PaymentRequirements(
                network=self.network,
                max_amount_required=self._amounts[route_key],
                resource=resource,
                description=terms.description,
                mime_type=terms.mime_type,
                pay_to=self.pay_to,
                asset=asset["address"],
                extra=dict(asset["eip712"]),
            )
        ]

    @staticmethod
    def payment_required(error: str, accepts: List[PaymentRequirements], payer: Optional[str] = None) -> PaymentRequiredError:
        content: Dict[str, Any] = {
            "x402Version": X402_VERSION,
            "error": error,
            "accepts": [r.model_dump(by_alias=True, exclude_none=True) for r in accepts],
        }
        if payer:
            content["payer"] = payer
        return PaymentRequiredError(error, payload=content)

    async def verify(self, request: Request, accepts: List[PaymentRequirements]) -> Tuple[Dict[str, Any], PaymentRequirements]:
        """校验 X-PAYMENT，返回 (支付载荷, 匹配的支付要求)；不通过时抛出 PaymentRequiredError。"""
        header = request.headers.get(PAYMENT_HEADER)
        if not header:
            raise self.payment_required(f"{PAYMENT_HEADER} header is required", accepts)

        try:
            payload = decode_payment_header(header)
        except ValueError:
            raise self.payment_required("Invalid or malformed payment header", accepts)

        if payload.get("x402Version") != X402_VERSION:
            raise self.payment_required(f"Unsupported x402Version: {payload.get('x402Version')!r}", accepts)

        selected = next(
            (r for r in accepts if r.scheme == payload.get("scheme") and r.network == payload.get("network")),
            None,
        )
        if selected is None:
            raise self.payment_required("Unable to find matching payment requirements", accepts)

        try:
            verification = await self.facilitator.verify(payload, selected)
        except FacilitatorError as e:
            logger.warning("Payment verification failed: %s", e)
            raise self.payment_required("Payment verification failed", accepts) from e
        if not verification.is_valid:
            raise self.payment_required(verification.invalid_reason or "Invalid payment", accepts, verification.payer)
        return payload, selected

    async def settle(self, payload: Dict[str, Any], selected: PaymentRequirements, accepts: List[PaymentRequirements]) -> str:
        """结算并返回 X-PAYMENT-RESPONSE 头的值。"""
        try:
            settlement = await self.facilitator.settle(payload, selected)
        except FacilitatorError as e:
            logger.error("Payment settlement failed: %s", e)
            raise self.payment_required("Payment settlement failed", accepts) from e
        if not settlement.success:
            logger.error("Payment settlement rejected: %s", settlement.error_reason)
            raise self.payment_required(settlement.error_reason or "Payment settlement failed", accepts, settlement.payer)
        return encode_header(settlement.model_dump(by_alias=True, exclude_none=True))

    async def __call__(self, request: Request, call_next):
        route_key = f"{request.method} {request.url.path}".upper()
        if route_key not in self.routes:
            return await call_next(request)

        accepts = self.requirements_for(route_key, str(request.url))
        try:
            payload, selected = await self.verify(request, accepts)
            response = await call_next(request)
            if response.status_code >= 400:
                # 业务失败不结算
                return response
            # 结算在存储与入库之后；结算失败返回402，但已上传的图片保留（与 x402-express 一致）
            response.headers[PAYMENT_RESPONSE_HEADER] = await self.settle(payload, selected, accepts)
        except PaymentRequiredError as e:
            # 中间件位于异常处理器之外，这里直接生成 402
            return JSONResponse(status_code=status.HTTP_402_PAYMENT_REQUIRED, content=e.payload)
        return response
