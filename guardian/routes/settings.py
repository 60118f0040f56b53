from guardian.core.settings import public_settings, update_settings
from guardian.logging_utils import get_logger
from guardian.web.helpers import get_db, get_services, json_body

settings_logger = get_logger("settings")


def register(app):
    @app.route("/api/settings", methods=["GET"])
    def api_settings_get():
        return public_settings(get_db())

    @app.route("/api/settings", methods=["PATCH"])
    def api_settings_update():
        data = json_body()
        result = update_settings(get_db(), data)

        # connection changes may point at another server
        if {"plex_server_ip", "plex_server_port", "use_ssl"} & set(data):
            get_services().plex.reset_server_identifier()
        return result

    @app.route("/api/settings/test-plex", methods=["POST"])
    def api_settings_test_plex():
        result = get_services().plex_client.test_connection()
        settings_logger.info(f"Plex connection test: {result['code']}")
        return result

    @app.route("/api/settings/test-smtp", methods=["POST"])
    def api_settings_test_smtp():
        return get_services().notifications.test_smtp_connection()

    # -----------------------------
    # Maintenance scripts
    # -----------------------------
    @app.route("/api/settings/scripts/reset-stream-counts", methods=["POST"])
    def api_scripts_reset_stream_counts():
        count = get_services().devices.reset_stream_counts()
        return {"success": True, "message": "Stream counts reset successfully", "affected": count}

    @app.route("/api/settings/scripts/delete-all-devices", methods=["POST"])
    def api_scripts_delete_all_devices():
        count = get_services().devices.delete_all_devices()
        return {"success": True, "message": "All devices deleted successfully", "affected": count}

    @app.route("/api/settings/scripts/clear-session-history", methods=["POST"])
    def api_scripts_clear_session_history():
        count = get_services().sessions.clear_all_session_history()
        return {"success": True, "message": "Session history cleared successfully", "affected": count}
