from __future__ import annotations

import json
import logging
from functools import lru_cache
from pathlib import Path
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from jinja2 import Environment, FileSystemLoader, select_autoescape

from config import get_settings
from errors import UpstreamError
from money import format_cents


logger = logging.getLogger(__name__)

RESEND_URL = "https://api.resend.com/emails"
TEMPLATE_DIR = Path(__file__).resolve().parent / "templates" / "email"


@lru_cache(maxsize=1)
def _environment() -> Environment:
    env = Environment(
        loader=FileSystemLoader(str(TEMPLATE_DIR)),
        autoescape=select_autoescape(["html"]),
    )
    env.filters["currency"] = format_cents
    return env


def render_email(template: str, **context: object) -> str:
    return _environment().get_template(f"{template}.html").render(**context)


class EmailSender:
    def __init__(self) -> None:
        self.settings = get_settings()

    def send(self, to: str, subject: str, html: str) -> bool:
        if not self.settings.resend_api_key:
            raise UpstreamError("Email delivery is not configured")

        body = json.dumps(
            {
                "from": self.settings.email_from,
                "to": [to],
                "subject": subject,
                "html": html,
            }
        ).encode("utf-8")
        req = Request(
            RESEND_URL,
            data=body,
            method="POST",
            headers={
                "Authorization": f"Bearer {self.settings.resend_api_key}",
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
        )
        try:
            with urlopen(req, timeout=self.settings.email_timeout_secs) as resp:
                payload = json.loads(resp.read().decode("utf-8") or "{}")
        except HTTPError as exc:
            raise UpstreamError(f"Email provider rejected message ({exc.code})") from exc
        except (URLError, TimeoutError, json.JSONDecodeError) as exc:
            raise UpstreamError("Failed to reach email provider") from exc

        logger.info(f"email_sent: to={to} subject={subject!r} id={payload.get('id')}")
        return True
