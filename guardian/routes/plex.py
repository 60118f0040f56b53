from flask import Response, request

from guardian.core.settings import get_settings
from guardian.errors import NotFoundError
from guardian.web.helpers import get_db, get_services


def register(app):
    @app.route("/api/plex/media/<kind>/<rating_key>", methods=["GET"])
    def api_plex_media(kind, rating_key):
        content = get_services().plex.get_media(kind, rating_key, request.args.get("t"))
        if content is None:
            raise NotFoundError("Media not found")
        return Response(
            content,
            mimetype="image/jpeg",
            headers={"Cache-Control": "public, max-age=3600"},
        )

    @app.route("/api/plex/web-url", methods=["GET"])
    def api_plex_web_url():
        return {"url": get_services().plex.get_plex_web_url()}

    @app.route("/api/plex/server-identity", methods=["GET"])
    def api_plex_server_identity():
        return {"machine_identifier": get_services().plex.get_server_identifier()}

    @app.route("/api/plex/status", methods=["GET"])
    def api_plex_status():
        s = get_settings(get_db())
        missing = [k for k in ("plex_server_ip", "plex_server_port", "plex_token") if not s.get(k)]
        return {"configured": not missing, "missing": missing}
