from flask import jsonify, request

from guardian.web.helpers import get_services, json_body, parse_bool, parse_int


def register(app):
    # -----------------------------
    # Users
    # -----------------------------
    @app.route("/api/users", methods=["GET"])
    def api_users_list():
        include_hidden = parse_bool(request.args.get("include_hidden"))
        return jsonify(get_services().users.get_all_users(include_hidden))

    @app.route("/api/users/hidden", methods=["GET"])
    def api_users_hidden():
        return jsonify(get_services().users.get_hidden_users())

    @app.route("/api/users/<user_id>/hide", methods=["POST"])
    def api_user_hide(user_id):
        return get_services().users.hide_user(user_id)

    @app.route("/api/users/<user_id>/show", methods=["POST"])
    def api_user_show(user_id):
        return get_services().users.show_user(user_id)

    @app.route("/api/users/<user_id>/toggle-visibility", methods=["POST"])
    def api_user_toggle_visibility(user_id):
        return get_services().users.toggle_user_visibility(user_id)

    @app.route("/api/users/<user_id>/preference", methods=["GET"])
    def api_user_preference(user_id):
        users = get_services().users
        pref = users.get_user_preference(user_id)
        return {
            "preference": pref,
            "effective_default_block": users.get_effective_default_block(user_id),
        }

    @app.route("/api/users/<user_id>/preference", methods=["PATCH"])
    def api_user_preference_update(user_id):
        data = json_body()
        value = data.get("default_block")
        default_block = None if value is None else parse_bool(value)
        return get_services().users.update_user_preference(user_id, default_block)

    @app.route("/api/users/<user_id>/ip-policy", methods=["PATCH"])
    def api_user_ip_policy(user_id):
        data = json_body()
        return get_services().users.update_user_ip_policy(
            user_id,
            network_policy=data.get("network_policy"),
            ip_access_policy=data.get("ip_access_policy"),
            allowed_ips=data.get("allowed_ips"),
        )

    @app.route("/api/users/<user_id>/sessions", methods=["GET"])
    def api_user_sessions(user_id):
        limit = parse_int(request.args.get("limit"), default=50, name="limit")
        include_active = parse_bool(request.args.get("include_active"))
        return jsonify(get_services().sessions.get_user_session_history(user_id, limit, include_active))

    @app.route("/api/users/sync", methods=["POST"])
    def api_users_sync():
        return get_services().users.sync_users_from_plex_tv()

    # -----------------------------
    # Time rules
    # -----------------------------
    @app.route("/api/users/<user_id>/time-rules", methods=["GET"])
    def api_time_rules_list(user_id):
        policy = get_services().time_policy
        device_identifier = request.args.get("device_identifier")
        if device_identifier:
            return jsonify(policy.get_rules_for_device(user_id, device_identifier))
        return jsonify(policy.get_rules(user_id))

    @app.route("/api/users/<user_id>/time-rules", methods=["POST"])
    def api_time_rules_create(user_id):
        data = json_body()
        days = data.get("days_of_week")
        if days is None and data.get("day_of_week") is not None:
            days = [data["day_of_week"]]
        rules = get_services().time_policy.create_rules(
            user_id,
            data.get("rule_name"),
            days or [],
            data.get("start_time"),
            data.get("end_time"),
            device_identifier=data.get("device_identifier"),
            enabled=parse_bool(data.get("enabled"), default=True),
        )
        return jsonify(rules), 201

    @app.route("/api/users/<user_id>/time-rules/summary", methods=["GET"])
    def api_time_rules_summary(user_id):
        policy = get_services().time_policy
        device_identifier = request.args.get("device_identifier")
        return {
            "summary": policy.get_policy_summary(user_id, device_identifier),
            "allowed_now": policy.is_time_schedule_allowed(user_id, device_identifier),
        }

    @app.route("/api/time-rules/<int:rule_id>", methods=["PATCH"])
    def api_time_rule_update(rule_id):
        return get_services().time_policy.update_rule(rule_id, json_body())

    @app.route("/api/time-rules/<int:rule_id>", methods=["DELETE"])
    def api_time_rule_delete(rule_id):
        get_services().time_policy.delete_rule(rule_id)
        return {"ok": True}

    @app.route("/api/time-rules/<int:rule_id>/toggle", methods=["POST"])
    def api_time_rule_toggle(rule_id):
        return get_services().time_policy.toggle_rule(rule_id)
