"""
darkflow/routing/jupiter.py

Jupiter aggregator HTTP client: quotes and swap instructions.

Every failure (HTTP status, timeout, transport error, unexpected body)
surfaces as QuoteError. Nothing here retries.
"""

import base64
import binascii
from typing import Any, Dict, Optional

import httpx
from loguru import logger
from solders.pubkey import Pubkey

from darkflow.core.exceptions import QuoteError
from darkflow.core.models import RouteAccount, RoutePlan


DEFAULT_BASE_URL = "https://lite-api.jup.ag/swap/v1"
DEFAULT_TIMEOUT  = 10.0


class JupiterClient:

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        timeout:  float = DEFAULT_TIMEOUT,
        client:   Optional[httpx.Client] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client  = client or httpx.Client(timeout=timeout)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "JupiterClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # ── HTTP ──────────────────────────────────────────────────

    def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            resp = self._client.request(method, url, **kwargs)
            resp.raise_for_status()
            data = resp.json()
        except httpx.TimeoutException as exc:
            raise QuoteError("Aggregator request timed out", {"path": path}) from exc
        except httpx.HTTPStatusError as exc:
            raise QuoteError(
                "Aggregator returned an error status",
                {"path": path, "status": exc.response.status_code},
            ) from exc
        except httpx.HTTPError as exc:
            raise QuoteError(f"Aggregator request failed: {exc}", {"path": path}) from exc
        except ValueError as exc:
            raise QuoteError("Aggregator returned invalid JSON", {"path": path}) from exc
        if not isinstance(data, dict):
            raise QuoteError("Aggregator response is not an object", {"path": path})
        return data

    # ── API ───────────────────────────────────────────────────

    def get_quote(
        self,
        input_mint:   str,
        output_mint:  str,
        amount:       int,
        slippage_bps: int = 50,
    ) -> Dict[str, Any]:
        """
        GET /quote. Returns the raw quote object; outAmount is checked to be
        an integer string so callers can rely on it.
        """
        quote = self._request(
            "GET",
            "/quote",
            params={
                "inputMint":   input_mint,
                "outputMint":  output_mint,
                "amount":      str(amount),
                "slippageBps": slippage_bps,
            },
        )
        out_amount = quote.get("outAmount")
        if not isinstance(out_amount, str) or not out_amount.isdigit():
            raise QuoteError("Quote missing outAmount", {"input": input_mint, "output": output_mint})
        logger.debug(
            "JUPITER | quote | in={} out={} amount={} out_amount={}",
            input_mint, output_mint, amount, out_amount,
        )
        return quote

    def get_swap_instruction(self, quote: Dict[str, Any], user: Pubkey) -> RoutePlan:
        """POST /swap-instructions for quote, swapping on behalf of user."""
        data = self._request(
            "POST",
            "/swap-instructions",
            json={
                "quoteResponse":    quote,
                "userPublicKey":    str(user),
                "wrapAndUnwrapSol": False,
            },
        )
        raw = data.get("swapInstruction")
        if not isinstance(raw, dict):
            raise QuoteError("Response missing swapInstruction")
        try:
            accounts = [
                RouteAccount(
                    pubkey=      Pubkey.from_string(item["pubkey"]),
                    is_signer=   bool(item["isSigner"]),
                    is_writable= bool(item["isWritable"]),
                )
                for item in raw["accounts"]
            ]
            return RoutePlan(
                program_id= Pubkey.from_string(raw["programId"]),
                data=       base64.b64decode(raw["data"], validate=True),
                accounts=   accounts,
                out_amount= int(quote["outAmount"]),
            )
        except (KeyError, TypeError, ValueError, binascii.Error) as exc:
            raise QuoteError(f"Malformed swapInstruction: {exc!r}") from exc
