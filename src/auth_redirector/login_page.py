"""Login page rendering."""

from __future__ import annotations

import html
from pathlib import Path
from string import Template

from auth_redirector.config import Settings

DEFAULT_TEMPLATE_PATH = Path(__file__).resolve().parent / "templates" / "login.html"


class LoginPage:
    """Literal ``${name}`` substitution over an HTML template."""

    def __init__(self, template_text: str, *, static_url: str, connect_url: str) -> None:
        self._template = Template(template_text)
        self._static_url = static_url
        self._connect_url = connect_url

    @classmethod
    def from_settings(cls, settings: Settings) -> "LoginPage":
        path = Path(settings.login_page.template_path or DEFAULT_TEMPLATE_PATH)
        return cls(
            path.read_text(encoding="utf-8"),
            static_url=settings.urls.static_url or settings.urls.connect_url,
            connect_url=settings.urls.connect_url,
        )

    def render(self, authorize_url: str) -> str:
        return self._template.safe_substitute(
            authorize_url=html.escape(authorize_url, quote=True),
            static_url=html.escape(self._static_url, quote=True),
            connect_url=html.escape(self._connect_url, quote=True),
        )
