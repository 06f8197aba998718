"""Receipt analysis through Gemini.

The result is advisory: it pre-fills a transaction form and never writes to
the ledger. Any failure surfaces as ``UpstreamError``.
"""

import json
import logging
from datetime import date
from typing import Optional

import google.generativeai as genai
from pydantic import ValidationError
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from config import get_settings
from errors import UpstreamError
from money import parse_amount
from schemas import ReceiptScan


logger = logging.getLogger(__name__)

MAX_RECEIPT_BYTES = 5 * 1024 * 1024

EXPENSE_CATEGORIES = (
    "housing",
    "transportation",
    "groceries",
    "utilities",
    "entertainment",
    "food",
    "shopping",
    "healthcare",
    "education",
    "personal",
    "travel",
    "insurance",
    "gifts",
    "bills",
    "other-expense",
)

PROMPT = f"""Analyze this receipt image and extract the following information in JSON format:
- Total amount (just the number)
- Date (in ISO format)
- Description or items purchased (brief summary)
- Merchant/store name
- Suggested category (one of: {", ".join(EXPENSE_CATEGORIES)})

Only respond with valid JSON in this exact format:
{{"amount": number, "date": "ISO date string", "description": "string", "merchantName": "string", "category": "string"}}

If it's not a receipt, return an empty object."""


class _TransientScanError(Exception):
    pass


class ReceiptScanner:
    def __init__(self, model: Optional[object] = None) -> None:
        self.settings = get_settings()
        self._model = model

    def _get_model(self):
        if self._model is None:
            if not self.settings.gemini_api_key:
                raise UpstreamError("Receipt scanning is not configured")
            genai.configure(api_key=self.settings.gemini_api_key)
            self._model = genai.GenerativeModel(
                model_name=self.settings.gemini_model,
                generation_config={"temperature": 0.1, "max_output_tokens": 512},
            )
        return self._model

    @retry(
        retry=retry_if_exception_type(_TransientScanError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=4),
        reraise=True,
    )
    def _generate(self, image_bytes: bytes, mime_type: str) -> str:
        model = self._get_model()
        try:
            response = model.generate_content(
                [{"mime_type": mime_type, "data": image_bytes}, PROMPT],
                request_options={"timeout": self.settings.ai_timeout_secs},
            )
            return response.text or ""
        except UpstreamError:
            raise
        except Exception as exc:
            logger.warning(f"receipt_scan_attempt_failed: error={exc}")
            raise _TransientScanError(str(exc)) from exc

    def scan(self, image_bytes: bytes, mime_type: str) -> ReceiptScan:
        if not image_bytes:
            raise UpstreamError("Empty receipt image")
        if len(image_bytes) > MAX_RECEIPT_BYTES:
            raise UpstreamError("Receipt image must be smaller than 5MB")
        try:
            text = self._generate(image_bytes, mime_type)
        except _TransientScanError as exc:
            raise UpstreamError("Failed to scan receipt") from exc
        return parse_scan_response(text)


def parse_scan_response(text: str) -> ReceiptScan:
    start = text.find("{")
    end = text.rfind("}") + 1
    if start < 0 or end <= start:
        raise UpstreamError("Receipt analysis returned no data")
    try:
        data = json.loads(text[start:end])
    except json.JSONDecodeError as exc:
        raise UpstreamError("Receipt analysis returned invalid JSON") from exc
    if not isinstance(data, dict) or not data:
        raise UpstreamError("Image does not look like a receipt")

    category = str(data.get("category") or "").strip().lower()
    if category not in EXPENSE_CATEGORIES:
        category = "other-expense"
    scanned_date: Optional[date] = None
    raw_date = data.get("date")
    if raw_date:
        try:
            scanned_date = date.fromisoformat(str(raw_date)[:10])
        except ValueError:
            scanned_date = None
    try:
        return ReceiptScan(
            amount_cents=parse_amount(str(data.get("amount", ""))),
            date=scanned_date,
            description=data.get("description") or None,
            category=category,
            merchant_name=data.get("merchantName") or None,
        )
    except (ValueError, ValidationError) as exc:
        raise UpstreamError("Receipt analysis returned an unusable amount") from exc
