import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP

import httpx

from shopsphere.errors import GatewayError

logger = logging.getLogger("orders.gateway")

MINOR_UNITS_PER_MAJOR = 100


def to_minor_units(amount: Decimal) -> int:
    scaled = (Decimal(str(amount)) * MINOR_UNITS_PER_MAJOR).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return int(scaled)


def from_minor_units(amount: int) -> Decimal:
    return (Decimal(amount) / MINOR_UNITS_PER_MAJOR).quantize(Decimal("0.01"))


@dataclass(frozen=True)
class GatewayIntent:
    intent_id: str
    amount: int
    currency: str


class RazorpayClient:
    """
    Thin async client for the Razorpay Orders API.

    Instances own their credentials; build one at startup and pass it to
    the workflow instead of sharing a module-level client.
    """

    def __init__(
        self,
        key_id: str,
        key_secret: str,
        base_url: str = "https://api.razorpay.com/v1",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.key_id = key_id
        self._client = httpx.AsyncClient(
            base_url=base_url,
            auth=(key_id, key_secret),
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )

    async def create_intent(self, amount_minor: int, currency: str, receipt: str) -> GatewayIntent:
        if isinstance(amount_minor, bool) or not isinstance(amount_minor, int) or amount_minor <= 0:
            raise ValueError("amount_minor must be a positive integer")

        body = {
            "amount": amount_minor,
            "currency": currency,
            "receipt": receipt,
            "payment_capture": 1,
        }
        logger.info("[Orders] Creating gateway order: amount=%s %s receipt=%s", amount_minor, currency, receipt)
        try:
            resp = await self._client.post("/orders", json=body)
        except httpx.TimeoutException as e:
            logger.error("[Orders] Gateway timed out: %s", e)
            raise GatewayError("Payment gateway timed out") from e
        except httpx.HTTPError as e:
            logger.error("[Orders] Gateway transport error: %s", e)
            raise GatewayError("Payment gateway unreachable") from e

        if resp.status_code >= 400:
            logger.error("[Orders] Gateway rejected order: %s %s", resp.status_code, resp.text)
            raise GatewayError(f"Payment gateway returned {resp.status_code}")

        try:
            data = resp.json()
            intent = GatewayIntent(
                intent_id=str(data["id"]),
                amount=int(data["amount"]),
                currency=str(data["currency"]),
            )
        except (ValueError, KeyError, TypeError) as e:
            logger.error("[Orders] Malformed gateway response: %s", e)
            raise GatewayError("Malformed payment gateway response") from e

        logger.info("[Orders] Gateway order %s created", intent.intent_id)
        return intent

    async def aclose(self) -> None:
        await self._client.aclose()
