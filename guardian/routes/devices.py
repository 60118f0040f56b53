from flask import jsonify

from guardian.web.helpers import get_services, json_body, parse_int


def _with_time_left(devices, items):
    for item in items:
        item["temporary_access_minutes_left"] = devices.get_temporary_access_time_left(item)
    return items


def register(app):
    @app.route("/api/devices", methods=["GET"])
    def api_devices_list():
        devices = get_services().devices
        return jsonify(_with_time_left(devices, devices.get_all_devices()))

    @app.route("/api/devices/pending", methods=["GET"])
    def api_devices_pending():
        devices = get_services().devices
        return jsonify(_with_time_left(devices, devices.get_pending_devices()))

    @app.route("/api/devices/processed", methods=["GET"])
    def api_devices_processed():
        devices = get_services().devices
        return jsonify(_with_time_left(devices, devices.get_processed_devices()))

    @app.route("/api/devices/approved", methods=["GET"])
    def api_devices_approved():
        devices = get_services().devices
        return jsonify(_with_time_left(devices, devices.get_approved_devices()))

    @app.route("/api/devices/<int:device_id>", methods=["GET"])
    def api_device_get(device_id):
        devices = get_services().devices
        return _with_time_left(devices, [devices.get_device(device_id)])[0]

    @app.route("/api/devices/<int:device_id>/approve", methods=["POST"])
    def api_device_approve(device_id):
        return get_services().devices.approve_device(device_id)

    @app.route("/api/devices/<int:device_id>/reject", methods=["POST"])
    def api_device_reject(device_id):
        return get_services().devices.reject_device(device_id)

    @app.route("/api/devices/<int:device_id>", methods=["DELETE"])
    def api_device_delete(device_id):
        get_services().devices.delete_device(device_id)
        return {"ok": True}

    @app.route("/api/devices/<int:device_id>/rename", methods=["PATCH"])
    def api_device_rename(device_id):
        data = json_body()
        return get_services().devices.rename_device(device_id, data.get("name"))

    @app.route("/api/devices/<int:device_id>/temporary-access", methods=["POST"])
    def api_device_grant_temporary(device_id):
        data = json_body()
        minutes = parse_int(data.get("duration_minutes"), name="duration_minutes")
        devices = get_services().devices
        device = devices.grant_temporary_access(device_id, minutes)
        return _with_time_left(devices, [device])[0]

    @app.route("/api/devices/<int:device_id>/temporary-access", methods=["DELETE"])
    def api_device_revoke_temporary(device_id):
        devices = get_services().devices
        devices.get_device(device_id)
        devices.revoke_temporary_access(device_id)
        return {"ok": True}
