from __future__ import annotations
from typing import Any, Dict, List, Optional
import requests
from flask import current_app

DISCORD_API_BASE = "https://discord.com/api/v10"


class DiscordError(Exception):
    def __init__(self, status_code: int, path: str, body: str = ""):
        super().__init__(f"Discord API error ({status_code}) {path}: {body}")
        self.status_code = status_code
        self.path = path


class DiscordClient:
    """
    Bot-token client for the few guild operations billing needs.
    Unconfigured pieces (no token, guild, role or channel) turn calls into
    logged no-ops returning False.
    """

    def __init__(
        self,
        bot_token: Optional[str],
        *,
        guild_id: Optional[str] = None,
        member_role_id: Optional[str] = None,
        ops_channel_id: Optional[str] = None,
        timeout: float = 6.0,
        session: Optional[requests.Session] = None,
    ):
        self.bot_token = bot_token
        self.guild_id = guild_id
        self.member_role_id = member_role_id
        self.ops_channel_id = ops_channel_id
        self.timeout = timeout
        self.http = session or requests.Session()

    @property
    def roles_enabled(self) -> bool:
        return bool(self.bot_token and self.guild_id and self.member_role_id)

    @property
    def messages_enabled(self) -> bool:
        return bool(self.bot_token and self.ops_channel_id)

    def _request(self, method: str, path: str, json: Optional[Dict[str, Any]] = None) -> requests.Response:
        res = self.http.request(
            method,
            f"{DISCORD_API_BASE}{path}",
            headers={"Authorization": f"Bot {self.bot_token}"},
            json=json,
            timeout=self.timeout,
        )
        if not res.ok:
            raise DiscordError(res.status_code, path, res.text[:500])
        return res

    def _role_path(self, member_id: str) -> str:
        return f"/guilds/{self.guild_id}/members/{member_id}/roles/{self.member_role_id}"

    def add_member_role(self, member_id: str) -> bool:
        if not self.roles_enabled:
            current_app.logger.warning("[community.discord] role sync not configured; would grant → %s", member_id)
            return False
        self._request("PUT", self._role_path(member_id))  # 204 even if already present
        return True

    def remove_member_role(self, member_id: str) -> bool:
        if not self.roles_enabled:
            current_app.logger.warning("[community.discord] role sync not configured; would revoke → %s", member_id)
            return False
        self._request("DELETE", self._role_path(member_id))
        return True

    def post_message(self, content: str, embeds: Optional[List[Dict[str, Any]]] = None) -> bool:
        if not self.messages_enabled:
            current_app.logger.warning("[community.discord] ops channel not configured; would post → %s", content)
            return False
        self._request(
            "POST",
            f"/channels/{self.ops_channel_id}/messages",
            json={
                "content": content,
                "embeds": embeds or [],
                "allowed_mentions": {"parse": []},
            },
        )
        return True
