import sqlite3

from guardian.logging_utils import get_logger

logger = get_logger("bootstrap")

# ---------------------------------------------------------
# Utility: checks
# ---------------------------------------------------------

def table_exists(cursor, table):
    cursor.execute("SELECT name FROM sqlite_master WHERE type='table' AND name=?", (table,))
    return cursor.fetchone() is not None

def column_exists(cursor, table, column):
    cursor.execute(f"PRAGMA table_info({table})")
    return any(row[1] == column for row in cursor.fetchall())

def ensure_column(cursor, table, column, definition):
    if not column_exists(cursor, table, column):
        logger.info(f"Adding missing column {table}.{column}")
        cursor.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")

def ensure_row(cursor, table, where_clause, values, where_params=()):
    cursor.execute(f"SELECT COUNT(*) FROM {table} WHERE {where_clause}", where_params)
    if cursor.fetchone()[0] == 0:
        fields = ", ".join(values.keys())
        placeholders = ", ".join(["?"] * len(values))
        cursor.execute(
            f"INSERT INTO {table} ({fields}) VALUES ({placeholders})",
            tuple(values.values()),
        )


# ---------------------------------------------------------
# SCHEMA
# ---------------------------------------------------------

TABLES = {
    "user_preferences": """
        CREATE TABLE IF NOT EXISTS user_preferences (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL UNIQUE,
            username TEXT,
            avatar_url TEXT,
            default_block INTEGER DEFAULT NULL,
            hidden INTEGER NOT NULL DEFAULT 0,
            network_policy TEXT NOT NULL DEFAULT 'both',
            ip_access_policy TEXT NOT NULL DEFAULT 'all',
            allowed_ips TEXT NOT NULL DEFAULT '[]',
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """,
    "user_devices": """
        CREATE TABLE IF NOT EXISTS user_devices (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            username TEXT,
            device_identifier TEXT NOT NULL,
            device_name TEXT,
            device_platform TEXT,
            device_product TEXT,
            device_version TEXT,
            status TEXT NOT NULL DEFAULT 'pending',
            session_count INTEGER NOT NULL DEFAULT 0,
            current_session_key TEXT,
            ip_address TEXT,
            first_seen TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            last_seen TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            temporary_access_until TIMESTAMP,
            temporary_access_granted_at TIMESTAMP,
            temporary_access_duration_minutes INTEGER,
            UNIQUE (user_id, device_identifier)
        )
    """,
    "session_history": """
        CREATE TABLE IF NOT EXISTS session_history (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            session_key TEXT NOT NULL,
            user_id TEXT,
            user_device_id INTEGER REFERENCES user_devices(id) ON DELETE SET NULL,
            device_address TEXT,
            player_state TEXT,
            product TEXT,
            content_title TEXT,
            content_type TEXT,
            grandparent_title TEXT,
            parent_title TEXT,
            year INTEGER,
            duration INTEGER,
            view_offset INTEGER,
            thumb TEXT,
            art TEXT,
            rating_key TEXT,
            parent_rating_key TEXT,
            video_resolution TEXT,
            bitrate INTEGER,
            container TEXT,
            video_codec TEXT,
            audio_codec TEXT,
            session_location TEXT,
            bandwidth INTEGER,
            terminated INTEGER NOT NULL DEFAULT 0,
            started_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            ended_at TIMESTAMP
        )
    """,
    "user_time_rules": """
        CREATE TABLE IF NOT EXISTS user_time_rules (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            device_identifier TEXT,
            rule_name TEXT NOT NULL,
            day_of_week INTEGER NOT NULL,
            start_time TEXT NOT NULL,
            end_time TEXT NOT NULL,
            enabled INTEGER NOT NULL DEFAULT 1,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """,
    "notifications": """
        CREATE TABLE IF NOT EXISTS notifications (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            text TEXT NOT NULL,
            type TEXT NOT NULL DEFAULT 'info',
            read INTEGER NOT NULL DEFAULT 0,
            session_history_id INTEGER REFERENCES session_history(id) ON DELETE SET NULL,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """,
    "settings": """
        CREATE TABLE IF NOT EXISTS settings (
            id INTEGER PRIMARY KEY CHECK (id = 1)
        )
    """,
    "tasks": """
        CREATE TABLE IF NOT EXISTS tasks (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT UNIQUE NOT NULL
        )
    """,
}

INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_session_history_key ON session_history(session_key)",
    "CREATE INDEX IF NOT EXISTS idx_session_history_user ON session_history(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_user_devices_identifier ON user_devices(device_identifier)",
    "CREATE INDEX IF NOT EXISTS idx_time_rules_user ON user_time_rules(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_notifications_user ON notifications(user_id)",
]

SETTINGS_COLUMNS = {
    "plex_server_ip": "TEXT DEFAULT ''",
    "plex_server_port": "TEXT DEFAULT '32400'",
    "plex_token": "TEXT DEFAULT ''",
    "use_ssl": "INTEGER DEFAULT 0",
    "ignore_cert_errors": "INTEGER DEFAULT 0",
    "custom_plex_url": "TEXT DEFAULT ''",
    "refresh_interval": "INTEGER DEFAULT 10",
    "default_block": "INTEGER DEFAULT 1",
    "msg_device_pending": "TEXT DEFAULT 'Device Pending Approval. The server owner must approve this device before it can be used.'",
    "msg_device_rejected": "TEXT DEFAULT 'You are not authorized to use this device. Please contact the server administrator for more information.'",
    "msg_time_restricted": "TEXT DEFAULT 'Streaming is not allowed at this time due to scheduling restrictions'",
    "msg_ip_lan_only": "TEXT DEFAULT 'Only LAN access is allowed'",
    "msg_ip_wan_only": "TEXT DEFAULT 'Only WAN access is allowed'",
    "msg_ip_not_allowed": "TEXT DEFAULT 'Your current IP address is not in the allowed list'",
    "device_cleanup_enabled": "INTEGER DEFAULT 0",
    "device_cleanup_interval_days": "INTEGER DEFAULT 30",
    "timezone": "TEXT DEFAULT '+00:00'",
    "auto_mark_notification_read": "INTEGER DEFAULT 1",
    "enable_media_thumbnails": "INTEGER DEFAULT 1",
    "enable_media_artwork": "INTEGER DEFAULT 1",
    "smtp_enabled": "INTEGER DEFAULT 0",
    "smtp_host": "TEXT DEFAULT ''",
    "smtp_port": "INTEGER DEFAULT 587",
    "smtp_user": "TEXT DEFAULT ''",
    "smtp_pass": "TEXT DEFAULT ''",
    "smtp_tls": "INTEGER DEFAULT 1",
    "mail_from": "TEXT DEFAULT ''",
    "mail_from_name": "TEXT DEFAULT 'Guardian Notifications'",
    "mail_to": "TEXT DEFAULT ''",
    "smtp_notify_on_new_device": "INTEGER DEFAULT 1",
    "smtp_notify_on_block": "INTEGER DEFAULT 1",
    "debug_mode": "INTEGER DEFAULT 0",
}

TASK_COLUMNS = {
    "description": "TEXT",
    "schedule": "TEXT",
    "enabled": "INTEGER DEFAULT 1",
    "status": "TEXT DEFAULT 'idle'",
    "last_run": "TIMESTAMP",
    "next_run": "TIMESTAMP",
    "last_error": "TEXT",
    "queued_count": "INTEGER NOT NULL DEFAULT 0",
    "updated_at": "TIMESTAMP DEFAULT CURRENT_TIMESTAMP",
}

DEFAULT_TASKS = [
    {
        "name": "update_sessions",
        "description": "Poll Plex sessions and enforce access rules",
        "schedule": None,
        "enabled": 1,
    },
    {
        "name": "device_cleanup",
        "description": "Remove devices inactive for the configured number of days",
        "schedule": "0 2 * * *",
        "enabled": 1,
    },
    {
        "name": "sync_plex_users",
        "description": "Import users shared on plex.tv",
        "schedule": "0 * * * *",
        "enabled": 1,
    },
]


# ---------------------------------------------------------
# MIGRATIONS
# ---------------------------------------------------------

def run_migrations(db_path):
    logger.info(f"Running DB migrations on {db_path}")

    conn = sqlite3.connect(db_path)
    try:
        cursor = conn.cursor()

        for name, ddl in TABLES.items():
            if not table_exists(cursor, name):
                logger.info(f"Creating table {name}")
            cursor.execute(ddl)

        for col, definition in SETTINGS_COLUMNS.items():
            ensure_column(cursor, "settings", col, definition)

        for col, definition in TASK_COLUMNS.items():
            ensure_column(cursor, "tasks", col, definition)

        # columns added after the first release
        ensure_column(cursor, "session_history", "terminated", "INTEGER NOT NULL DEFAULT 0")
        ensure_column(cursor, "user_preferences", "hidden", "INTEGER NOT NULL DEFAULT 0")

        for sql in INDEXES:
            cursor.execute(sql)

        ensure_row(cursor, "settings", "id = 1", {"id": 1})

        for task in DEFAULT_TASKS:
            ensure_row(cursor, "tasks", "name = ?", task, (task["name"],))

        conn.commit()
    finally:
        conn.close()

    logger.info("DB migrations done")
