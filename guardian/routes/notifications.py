from flask import jsonify

from guardian.web.helpers import get_services


def register(app):
    @app.route("/api/notifications", methods=["GET"])
    def api_notifications_list():
        return jsonify(get_services().notifications.get_all_notifications())

    @app.route("/api/notifications/user/<user_id>", methods=["GET"])
    def api_notifications_user(user_id):
        return jsonify(get_services().notifications.get_notifications_for_user(user_id))

    @app.route("/api/notifications/user/<user_id>/unread-count", methods=["GET"])
    def api_notifications_unread_count(user_id):
        return {"count": get_services().notifications.get_unread_count_for_user(user_id)}

    @app.route("/api/notifications/<int:notification_id>/read", methods=["PATCH"])
    def api_notification_read(notification_id):
        return get_services().notifications.mark_as_read(notification_id)

    @app.route("/api/notifications/<int:notification_id>/read/force", methods=["PATCH"])
    def api_notification_read_force(notification_id):
        return get_services().notifications.mark_as_read(notification_id, forced=True)

    @app.route("/api/notifications/mark-all-read", methods=["PATCH"])
    def api_notifications_mark_all_read():
        get_services().notifications.mark_all_as_read()
        return {"ok": True}

    @app.route("/api/notifications/clear-all", methods=["DELETE"])
    def api_notifications_clear_all():
        get_services().notifications.clear_all()
        return {"ok": True}

    @app.route("/api/notifications/<int:notification_id>", methods=["DELETE"])
    def api_notification_delete(notification_id):
        get_services().notifications.delete_notification(notification_id)
        return {"ok": True}
