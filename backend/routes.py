from flask import Blueprint, current_app, g, jsonify, redirect, request
from flask_babel import gettext as _
from flask_jwt_extended import jwt_required

import xp
from focus import FocusView
from gateway import AuthError, GatewayError, PolicyError, TransientError
from identity import (ANONYMOUS, AuthEvent, Authenticated, clear_session_cookies,
                      set_session_cookies, visitor_key)
from leaderboard import LeaderboardView
from planner import PlannerView, TaskNotFound
from profiles import ProfileNotFound, ensure_profile, focus_stats, initials, load_profile, xp_drift
from timer import clamp_minutes, validate_minutes
from utils import parse_date, parse_month, setup_logger

logger = setup_logger(__name__)

auth_bp = Blueprint('auth', __name__)
main_bp = Blueprint('main', __name__)

FOCUS_COOKIE = 'focus_minutes'
FOCUS_COOKIE_AGE = 60 * 60 * 24 * 365
DEMO_XP = 1250


def _ext(name):
    return current_app.extensions[name]


def _identity():
    return getattr(g, 'identity', ANONYMOUS)


def _error_response(exc):
    """Map a gateway failure raised at a user action to a JSON error."""
    if isinstance(exc, AuthError):
        return jsonify({"msg": exc.message}), 401 if exc.status == 401 else 400
    if isinstance(exc, PolicyError):
        return jsonify({"msg": _("Operation failed")}), 403
    if isinstance(exc, TransientError):
        return jsonify({"msg": _("Service unavailable, please try again")}), 502
    return jsonify({"msg": exc.message}), 502


def _json_body():
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _text(data, key):
    value = data.get(key)
    return value.strip() if isinstance(value, str) else ''


def _publish(event, identity, visitor=None):
    _ext('auth_stream').publish(event, identity, visitor)


# --- Auth Routes ---

@auth_bp.route('/signup', methods=['POST'])
def signup():
    data = _json_body()
    username = _text(data, 'username')
    email = _text(data, 'email')
    password = data.get('password')

    if not username or not email or not password:
        return jsonify({"msg": _("All fields are required")}), 400

    gateway = _ext('gateway')
    try:
        if gateway.find_profile_by_username(username):
            return jsonify({"msg": _("Username already taken")}), 400
        gateway.sign_up(email, password, username,
                        redirect_to=f"{current_app.config['SITE_URL']}/callback")
    except GatewayError as exc:
        return _error_response(exc)

    return jsonify({"msg": _("Check your email to confirm your account"),
                    "next": "/verify-email"}), 201


@auth_bp.route('/verify-email', methods=['GET'])
def verify_email():
    return jsonify({"msg": _("We've sent a confirmation link to your email address. "
                             "Please click the link to activate your account.")}), 200


@auth_bp.route('/callback', methods=['GET'])
def callback():
    login_path = current_app.config['LOGIN_PATH']
    code = request.args.get('token_hash') or request.args.get('code')
    kind = request.args.get('type', 'email')
    if not code:
        return redirect(login_path)

    gateway = _ext('gateway')
    try:
        backend_session = gateway.verify(code, kind)
    except GatewayError as exc:
        logger.warning(f"callback verification failed: {exc}")
        return redirect(login_path)

    previous = visitor_key(_identity())
    if kind == 'recovery':
        identity = Authenticated.from_session(backend_session, recovery=True)
        response = redirect('/reset-password')
        event = AuthEvent.PASSWORD_RECOVERY
    else:
        try:
            ensure_profile(gateway, backend_session)
        except GatewayError as exc:
            # the profile page retries and reports a missing profile
            logger.error(f"profile reconciliation failed for {backend_session.user_id}: {exc}")
        identity = Authenticated.from_session(backend_session)
        response = redirect(current_app.config['LANDING_PATH'])
        event = AuthEvent.SIGNED_IN

    g.session_replaced = True
    set_session_cookies(response, identity)
    _publish(event, identity, previous)
    return response


@auth_bp.route('/login', methods=['POST'])
def login():
    data = _json_body()
    email = data.get('email')
    password = data.get('password')
    if not email or not password:
        return jsonify({"msg": _("Email and password required")}), 400

    try:
        backend_session = _ext('gateway').sign_in(email, password)
    except GatewayError as exc:
        return _error_response(exc)

    previous = visitor_key(_identity())
    identity = Authenticated.from_session(backend_session)
    response = jsonify({"msg": _("Logged in"), "next": current_app.config['LANDING_PATH']})
    g.session_replaced = True
    set_session_cookies(response, identity)
    _publish(AuthEvent.SIGNED_IN, identity, previous)
    return response, 200


@auth_bp.route('/logout', methods=['POST'])
@jwt_required()
def logout():
    identity = _identity()
    if identity.is_authenticated:
        try:
            _ext('gateway').sign_out(identity.access_token)
        except GatewayError as exc:
            logger.warning(f"backend sign-out failed for {identity.id}: {exc}")
        _publish(AuthEvent.SIGNED_OUT, identity, identity.id)

    response = jsonify({"msg": _("Logged out"), "next": "/"})
    g.session_replaced = True
    clear_session_cookies(response)
    return response, 200


@auth_bp.route('/forgot-password', methods=['POST'])
def forgot_password():
    data = _json_body()
    email = _text(data, 'email')
    if not email:
        return jsonify({"msg": _("Email required")}), 400

    try:
        _ext('gateway').send_password_reset(
            email, f"{current_app.config['SITE_URL']}/reset-password")
    except GatewayError as exc:
        return _error_response(exc)
    return jsonify({"msg": _("Check your email for a password reset link.")}), 200


@auth_bp.route('/reset-password', methods=['GET'])
def reset_password_form():
    if not _identity().recovery:
        return jsonify({"allowed": False,
                        "msg": _("Invalid or expired password reset link.")}), 200
    return jsonify({"allowed": True}), 200


@auth_bp.route('/reset-password', methods=['POST'])
@jwt_required()
def reset_password():
    identity = _identity()
    if not identity.recovery:
        return jsonify({"msg": _("Invalid or expired password reset link.")}), 403

    data = _json_body()
    password = data.get('password')
    if not password:
        return jsonify({"msg": _("Password required")}), 400

    gateway = _ext('gateway')
    try:
        gateway.update_password(identity.access_token, password)
    except GatewayError as exc:
        return _error_response(exc)
    _publish(AuthEvent.USER_UPDATED, identity, identity.id)

    # 修改密码后强制重新登录
    try:
        gateway.sign_out(identity.access_token)
    except GatewayError as exc:
        logger.warning(f"sign-out after password reset failed: {exc}")
    _publish(AuthEvent.SIGNED_OUT, identity, identity.id)

    response = jsonify({"msg": _("Password updated"), "next": current_app.config['LOGIN_PATH']})
    g.session_replaced = True
    clear_session_cookies(response)
    return response, 200


# --- Pages ---

@main_bp.route('/', methods=['GET'])
def home():
    identity = _identity()
    body = {
        "logged_in": identity.is_authenticated,
        "primary_href": "/focus" if identity.is_authenticated else current_app.config['LOGIN_PATH'],
        "display_name": _ext('display_names').get(identity),
    }
    if not identity.is_authenticated:
        body["demo"] = xp.summary(DEMO_XP)
    return jsonify(body), 200


# --- Focus ---

def _focus_view():
    identity = _identity()
    minutes = clamp_minutes(request.cookies.get(FOCUS_COOKIE))

    def build():
        return FocusView(_ext('gateway'), identity, _ext('scheduler'), minutes,
                         feed=_ext('profile_feed')).mount()

    return _ext('views').get_or_mount(visitor_key(identity), FocusView.kind, identity, build)


@main_bp.route('/focus', methods=['GET'])
def focus():
    return jsonify(_focus_view().snapshot()), 200


@main_bp.route('/focus', methods=['DELETE'])
def leave_focus():
    _ext('views').unmount(visitor_key(_identity()), FocusView.kind)
    return '', 204


@main_bp.route('/focus/<action>', methods=['POST'])
def focus_action(action):
    view = _focus_view()
    if action == 'start':
        if not view.start():
            return jsonify({"msg": _("Timer cannot start now"), **view.snapshot()}), 409
    elif action in ('stop', 'pause'):
        view.timer.stop()
    elif action == 'reset':
        view.timer.reset()
    else:
        return jsonify({"msg": _("Unknown action")}), 404
    return jsonify(view.snapshot()), 200


@main_bp.route('/focus/duration', methods=['POST'])
def focus_duration():
    data = _json_body()
    try:
        minutes = validate_minutes(data.get('minutes'))
    except (TypeError, ValueError) as exc:
        return jsonify({"msg": str(exc)}), 400

    view = _focus_view()
    view.timer.set_duration(minutes)
    response = jsonify(view.snapshot())
    response.set_cookie(FOCUS_COOKIE, str(minutes), max_age=FOCUS_COOKIE_AGE, samesite='Lax')
    return response, 200


@main_bp.route('/focus/active-task', methods=['POST'])
def focus_active_task():
    data = _json_body()
    view = _focus_view()
    try:
        view.select_task(data.get('task_id'))
    except TaskNotFound:
        return jsonify({"msg": _("Task not found")}), 404
    return jsonify(view.snapshot()), 200


@main_bp.route('/focus/tasks', methods=['POST'])
def focus_add_task():
    data = _json_body()
    view = _focus_view()
    try:
        task = view.planner.add(data.get('title'))
    except GatewayError as exc:
        return _error_response(exc)
    if task is None:
        return jsonify({"msg": _("Task title required")}), 400
    return jsonify({"task": task.to_dict(), **view.snapshot()}), 201


@main_bp.route('/focus/tasks/<task_id>/toggle', methods=['POST'])
def focus_toggle_task(task_id):
    view = _focus_view()
    try:
        view.planner.toggle_completed(task_id)
    except TaskNotFound:
        return jsonify({"msg": _("Task not found")}), 404
    return jsonify(view.snapshot()), 200


@main_bp.route('/focus/tasks/<task_id>', methods=['DELETE'])
def focus_delete_task(task_id):
    view = _focus_view()
    try:
        view.planner.remove(task_id)
    except TaskNotFound:
        return jsonify({"msg": _("Task not found")}), 404
    return jsonify(view.snapshot()), 200


# --- Planner ---

def _planner_view():
    identity = _identity()
    return _ext('views').get_or_mount(
        visitor_key(identity), PlannerView.kind, identity,
        lambda: PlannerView(_ext('gateway'), identity))


@main_bp.route('/planner', methods=['GET'])
def planner():
    try:
        month = parse_month(request.args['month']) if request.args.get('month') else None
        selected = parse_date(request.args.get('date'))
    except ValueError:
        return jsonify({"msg": _("Invalid date")}), 400

    view = _planner_view()
    try:
        view.show(month, selected)
    except GatewayError as exc:
        return _error_response(exc)
    return jsonify(view.snapshot()), 200


@main_bp.route('/planner/tasks', methods=['POST'])
def planner_add_task():
    data = _json_body()
    view = _planner_view()
    try:
        due_date = parse_date(data.get('due_date')) or view.selected
        task = view.planner.add(data.get('title'), data.get('priority'),
                                data.get('duration_min') or 25, due_date)
    except ValueError as exc:
        return jsonify({"msg": str(exc)}), 400
    except GatewayError as exc:
        return _error_response(exc)
    if task is None:
        return jsonify({"msg": _("Task title required")}), 400
    return jsonify({"task": task.to_dict(), **view.snapshot()}), 201


@main_bp.route('/planner/tasks/<task_id>/toggle', methods=['POST'])
def planner_toggle_task(task_id):
    view = _planner_view()
    try:
        view.planner.toggle_completed(task_id)
    except TaskNotFound:
        return jsonify({"msg": _("Task not found")}), 404
    return jsonify(view.snapshot()), 200


@main_bp.route('/planner/tasks/<task_id>', methods=['DELETE'])
def planner_delete_task(task_id):
    view = _planner_view()
    try:
        view.planner.remove(task_id)
    except TaskNotFound:
        return jsonify({"msg": _("Task not found")}), 404
    return jsonify(view.snapshot()), 200


@main_bp.route('/planner/resync', methods=['POST'])
def planner_resync():
    view = _planner_view()
    try:
        view.planner.resync()
    except GatewayError as exc:
        return _error_response(exc)
    return jsonify(view.snapshot()), 200


# --- Leaderboard ---

@main_bp.route('/leaderboard', methods=['GET'])
def leaderboard():
    identity = _identity()

    def build():
        return LeaderboardView(_ext('gateway'), identity, feed=_ext('profile_feed')).mount()

    view = _ext('views').get_or_mount(visitor_key(identity), LeaderboardView.kind, identity, build)
    return jsonify(view.snapshot()), 200


@main_bp.route('/leaderboard', methods=['DELETE'])
def leave_leaderboard():
    _ext('views').unmount(visitor_key(_identity()), LeaderboardView.kind)
    return '', 204


# --- Profile ---

@main_bp.route('/profile', methods=['GET'])
def profile():
    identity = _identity()
    if not identity.is_authenticated:
        return redirect(current_app.config['LOGIN_PATH'])

    gateway = _ext('gateway')
    try:
        row = load_profile(gateway, identity, delay=current_app.config.get('PROFILE_RETRY_DELAY', 0.8))
    except ProfileNotFound:
        return jsonify({"msg": _("Profile not found. Your profile was not created in database."),
                        "retry": "/profile"}), 404
    except PolicyError:
        return jsonify({"msg": _("Failed to load profile. Check access policies.")}), 403
    except GatewayError as exc:
        return _error_response(exc)

    try:
        stats = focus_stats(gateway, identity)
    except GatewayError as exc:
        logger.warning(f"focus stats unavailable for {identity.id}: {exc}")
        stats = {'sessions': 0, 'minutes': 0, 'xp_earned': None}

    drift = xp_drift(row, stats) if stats['xp_earned'] is not None else None
    if drift:
        logger.warning(f"XP drift for {identity.id}: sessions={stats['xp_earned']} total_xp={row.total_xp}")

    return jsonify({
        "username": row.username,
        "email": row.email,
        "initials": initials(row.username),
        "xp": xp.summary(row.total_xp),
        "stats": {"sessions": stats['sessions'], "minutes": stats['minutes']},
        "xp_drift": drift,
    }), 200
