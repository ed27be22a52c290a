"""
운영자 알림 (Telegram)

토큰/채팅 ID 가 없으면 로그만 남긴다. 전송 실패는 경고 로그로 끝나고 호출자에게 전파되지 않는다.
"""
import logging
from typing import Callable

import httpx

from control_plane.settings import Settings

log = logging.getLogger("telegram")

Notifier = Callable[[str, str], None]

_API_BASE = "https://api.telegram.org"
_MAX_MESSAGE_LEN = 4096  # sendMessage text 한도
_ICONS = {"INFO": "ℹ️", "WARN": "⚠️", "CRITICAL": "🔴"}


class TelegramNotifier:
    """`notify(level, text)` 형태로 주입되는 알림기. plain text 로 보낸다 (parse_mode 없음)."""

    def __init__(self, token: str, chat_id: str, timeout: float = 5.0,
                 transport: httpx.BaseTransport | None = None):
        self.token = token.strip()
        self.chat_id = chat_id.strip()
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings) -> "TelegramNotifier":
        return cls(settings.telegram_bot_token, settings.telegram_chat_id)

    @property
    def enabled(self) -> bool:
        return bool(self.token and self.chat_id)

    @staticmethod
    def format(level: str, text: str) -> str:
        msg = f"{_ICONS.get(level, '📢')} [{level}] {text}"
        if len(msg) > _MAX_MESSAGE_LEN:
            msg = msg[:_MAX_MESSAGE_LEN - 1] + "…"
        return msg

    def send(self, level: str, text: str) -> bool:
        """전송 성공 여부. 미설정이면 로그만 남기고 False."""
        if not self.enabled:
            log.info("[Telegram-%s] %s", level, text)
            return False
        payload = {"chat_id": self.chat_id, "text": self.format(level, text)}
        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                resp = client.post(f"{_API_BASE}/bot{self.token}/sendMessage", json=payload)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            # 토큰이 URL 에 들어가므로 예외 타입만 남김
            log.warning("Telegram send failed level=%s: %s", level, type(exc).__name__)
            return False
        if resp.status_code != 200:
            log.warning("Telegram HTTP %s level=%s: %s", resp.status_code, level, resp.text[:200])
            return False
        return True

    def __call__(self, level: str, text: str) -> None:
        self.send(level, text)


def notify_safely(notify: Notifier | None, level: str, text: str) -> None:
    """알림기 예외가 이미 커밋된 전이나 sweep 결과를 실패로 만들지 않도록 격리."""
    if notify is None:
        return
    try:
        notify(level, text)
    except Exception:
        log.exception("Notifier failed level=%s", level)
