import json
import xml.etree.ElementTree as ET
from typing import List, Optional

from guardian.core.policy.ip_validation import (
    IP_ACCESS_POLICIES,
    NETWORK_POLICIES,
    validate_allowed_entry,
)
from guardian.core.settings import get_setting
from guardian.core.timeutils import iso_now
from guardian.errors import NotFoundError, ValidationError
from guardian.logging_utils import get_logger

logger = get_logger("users")

VISIBILITY_ACTIONS = ("hide", "show", "toggle")


def preference_dict(row) -> Optional[dict]:
    if row is None:
        return None
    data = dict(row)
    if data.get("default_block") is not None:
        data["default_block"] = bool(data["default_block"])
    data["hidden"] = bool(data.get("hidden"))
    try:
        data["allowed_ips"] = json.loads(data.get("allowed_ips") or "[]")
    except ValueError:
        data["allowed_ips"] = []
    return data


def parse_users_xml(xml_text: str) -> List[dict]:
    """<MediaContainer><User id=".." username=".." title=".." thumb=".."/></MediaContainer>"""
    try:
        root = ET.fromstring(xml_text)
    except ET.ParseError as e:
        logger.error(f"Failed to parse plex.tv users XML: {e}")
        return []

    users = []
    for node in root.iter("User"):
        users.append({
            "id": node.attrib.get("id"),
            "username": node.attrib.get("username"),
            "title": node.attrib.get("title"),
            "thumb": node.attrib.get("thumb"),
            "friendly_name": node.attrib.get("friendlyName"),
        })
    logger.debug(f"Parsed {len(users)} users from plex.tv XML")
    return users


class UsersService:
    def __init__(self, db, plex_client=None):
        self.db = db
        self.plex_client = plex_client

    # -------------------------
    # Read
    # -------------------------

    def get_all_users(self, include_hidden: bool = False) -> List[dict]:
        sql = "SELECT * FROM user_preferences"
        if not include_hidden:
            sql += " WHERE hidden = 0"
        sql += " ORDER BY username COLLATE NOCASE ASC"
        return [preference_dict(r) for r in self.db.query(sql)]

    def get_hidden_users(self) -> List[dict]:
        rows = self.db.query(
            "SELECT * FROM user_preferences WHERE hidden = 1 ORDER BY username COLLATE NOCASE ASC"
        )
        return [preference_dict(r) for r in rows]

    def get_user_preference(self, user_id: str) -> Optional[dict]:
        row = self.db.query_one("SELECT * FROM user_preferences WHERE user_id = ?", (str(user_id),))
        return preference_dict(row)

    def _require(self, user_id: str) -> dict:
        pref = self.get_user_preference(user_id)
        if pref is None:
            raise NotFoundError("User not found")
        return pref

    # -------------------------
    # Visibility
    # -------------------------

    def update_user_visibility(self, user_id: str, action: str) -> dict:
        if action not in VISIBILITY_ACTIONS:
            raise ValidationError(f"Invalid visibility action: {action}")

        pref = self._require(user_id)
        if action == "hide":
            hidden = True
        elif action == "show":
            hidden = False
        else:
            hidden = not pref["hidden"]

        self.db.execute(
            "UPDATE user_preferences SET hidden = ?, updated_at = ? WHERE user_id = ?",
            (1 if hidden else 0, iso_now(), str(user_id)),
        )
        return self._require(user_id)

    def hide_user(self, user_id: str) -> dict:
        return self.update_user_visibility(user_id, "hide")

    def show_user(self, user_id: str) -> dict:
        return self.update_user_visibility(user_id, "show")

    def toggle_user_visibility(self, user_id: str) -> dict:
        return self.update_user_visibility(user_id, "toggle")

    # -------------------------
    # Write
    # -------------------------

    def update_user_from_session_data(self, user_id: str, username: Optional[str] = None) -> None:
        """Create the preference row for a user first seen in a session."""
        if not user_id:
            return
        try:
            now = iso_now()
            cur = self.db.execute(
                """
                INSERT INTO user_preferences (user_id, username, default_block, created_at, updated_at)
                VALUES (?, ?, NULL, ?, ?)
                ON CONFLICT(user_id) DO NOTHING
                """,
                (str(user_id), username, now, now),
            )
            if cur.rowcount:
                logger.debug(f"Created user preference: {user_id} ({username})")
        except Exception as e:
            logger.error(f"Error updating user from session data {user_id}: {e}", exc_info=True)

    def update_user_preference(self, user_id: str, default_block: Optional[bool]) -> dict:
        value = None if default_block is None else (1 if default_block else 0)
        pref = self.get_user_preference(user_id)
        now = iso_now()

        if pref:
            logger.info(f"Updating default block for user {user_id} to {default_block}")
            self.db.execute(
                "UPDATE user_preferences SET default_block = ?, updated_at = ? WHERE user_id = ?",
                (value, now, str(user_id)),
            )
        else:
            logger.warning(f"No preference for user {user_id}, creating one")
            device = self.db.query_one(
                "SELECT username FROM user_devices WHERE user_id = ? AND username IS NOT NULL LIMIT 1",
                (str(user_id),),
            )
            self.db.execute(
                """
                INSERT INTO user_preferences (user_id, username, default_block, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (str(user_id), device["username"] if device else None, value, now, now),
            )
        return self._require(user_id)

    def update_user_ip_policy(
        self,
        user_id: str,
        network_policy: Optional[str] = None,
        ip_access_policy: Optional[str] = None,
        allowed_ips: Optional[List[str]] = None,
    ) -> dict:
        self._require(user_id)

        values = {}
        if network_policy is not None:
            if network_policy not in NETWORK_POLICIES:
                raise ValidationError(f"Invalid network policy: {network_policy}")
            values["network_policy"] = network_policy
        if ip_access_policy is not None:
            if ip_access_policy not in IP_ACCESS_POLICIES:
                raise ValidationError(f"Invalid IP access policy: {ip_access_policy}")
            values["ip_access_policy"] = ip_access_policy
        if allowed_ips is not None:
            if not isinstance(allowed_ips, list):
                raise ValidationError("allowed_ips must be a list")
            cleaned = [str(e).strip() for e in allowed_ips if str(e).strip()]
            invalid = [e for e in cleaned if not validate_allowed_entry(e)]
            if invalid:
                raise ValidationError(f"Invalid IP or CIDR: {', '.join(invalid)}")
            values["allowed_ips"] = json.dumps(cleaned)

        if values:
            values["updated_at"] = iso_now()
            assignments = ", ".join(f"{k} = ?" for k in values)
            self.db.execute(
                f"UPDATE user_preferences SET {assignments} WHERE user_id = ?",
                (*values.values(), str(user_id)),
            )
            logger.info(f"IP policy updated for user {user_id}: {sorted(values)}")

        return self._require(user_id)

    def get_effective_default_block(self, user_id: str) -> bool:
        pref = self.get_user_preference(user_id)
        if pref and pref.get("default_block") is not None:
            return pref["default_block"]
        return bool(get_setting(self.db, "default_block", True))

    # -------------------------
    # plex.tv sync
    # -------------------------

    def sync_users_from_plex_tv(self) -> dict:
        created = updated = errors = 0

        logger.info("Starting Plex users sync from plex.tv")
        try:
            xml_text = self.plex_client.get_plex_users()
        except Exception as e:
            logger.error(f"Failed to sync users from plex.tv: {e}")
            return {"created": 0, "updated": 0, "errors": 1}

        users = parse_users_xml(xml_text) if xml_text else []
        if not users:
            logger.warning("No users found in plex.tv response")
            return {"created": 0, "updated": 0, "errors": 1}

        logger.info(f"Received {len(users)} users from plex.tv")

        for user in users:
            user_id = str(user.get("id") or "").strip()
            if not user_id:
                logger.warning("Skipping plex.tv user with no id")
                errors += 1
                continue

            username = user.get("username") or user.get("title") or user.get("friendly_name")
            avatar_url = user.get("thumb")

            try:
                existing = self.get_user_preference(user_id)
                now = iso_now()
                if existing is None:
                    self.db.execute(
                        """
                        INSERT INTO user_preferences
                            (user_id, username, avatar_url, default_block, created_at, updated_at)
                        VALUES (?, ?, ?, NULL, ?, ?)
                        """,
                        (user_id, username, avatar_url, now, now),
                    )
                    created += 1
                    logger.info(f"Created new user: {user_id} ({username})")
                    continue

                changed = (username and existing.get("username") != username) or (
                    avatar_url and existing.get("avatar_url") != avatar_url
                )
                if changed:
                    self.db.execute(
                        """
                        UPDATE user_preferences
                        SET username = COALESCE(?, username),
                            avatar_url = COALESCE(?, avatar_url),
                            updated_at = ?
                        WHERE user_id = ?
                        """,
                        (username, avatar_url, now, user_id),
                    )
                    updated += 1
                    logger.debug(f"Updated user: {user_id} ({username})")
            except Exception as e:
                logger.error(f"Error processing plex.tv user {user_id}: {e}", exc_info=True)
                errors += 1

        logger.info(f"Plex users sync completed: {created} created, {updated} updated, {errors} errors")
        return {"created": created, "updated": updated, "errors": errors}
