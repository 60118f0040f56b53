from guardian.web.helpers import get_services, json_body


def register(app):
    @app.route("/api/sessions/active", methods=["GET"])
    def api_sessions_active():
        return get_services().plex.get_active_sessions_with_media_urls()

    @app.route("/api/sessions/refresh", methods=["POST"])
    def api_sessions_refresh():
        services = get_services()
        services.plex.update_active_sessions()
        return services.plex.get_active_sessions_with_media_urls()

    @app.route("/api/sessions/<session_id>/terminate", methods=["POST"])
    def api_session_terminate(session_id):
        data = json_body()
        get_services().termination.terminate_session(session_id, data.get("reason"))
        return {"ok": True}

    @app.route("/api/sessions/history/<int:history_id>", methods=["DELETE"])
    def api_session_history_delete(history_id):
        get_services().sessions.delete_session_history(history_id)
        return {"ok": True}
