from __future__ import annotations

from functools import wraps
import logging
from typing import Any, Dict, Optional

from flask import (
    Blueprint,
    Response,
    abort,
    current_app,
    flash,
    g,
    redirect,
    render_template,
    request,
    send_from_directory,
    session,
    stream_with_context,
    url_for,
)

from .services.chat_service import is_participant
from .services.realtime import Change, ChangeTopic, Subscription, format_sse
from .utils.auth import AuthError, VerifiedUser, decode_verification_token

main_bp = Blueprint('main', __name__)

logger = logging.getLogger(__name__)

FEED_TABS = ('following', 'everyone')


# --- Session gate --------------------------------------------------------


def _verified_user() -> Optional[VerifiedUser]:
    return VerifiedUser.from_session(session.get('verified_user'))


def _wants_json() -> bool:
    return request.path.startswith('/api/')


def _unauthorized(target: str, message: str) -> Response:
    if _wants_json():
        return {'error': message}, 401
    flash(message, 'info')
    return redirect(url_for(target))


def verified_required(view):
    """Decorator ensuring the visitor has passed identity verification."""

    @wraps(view)
    def wrapped(*args, **kwargs):
        identity = _verified_user()
        if identity is None:
            return _unauthorized('main.verify', 'Verify that you are a real person to continue.')
        g.identity = identity
        return view(*args, **kwargs)

    return wrapped


def profile_required(view):
    """Decorator ensuring the verified visitor has also created a profile."""

    @wraps(view)
    def wrapped(*args, **kwargs):
        identity = _verified_user()
        if identity is None:
            return _unauthorized('main.verify', 'Verify that you are a real person to continue.')

        try:
            profile = current_app.profile_service.get_user_profile(identity.user_id)
        except Exception:
            logger.warning('session.profile_lookup_failed', exc_info=True, extra={'user_id': identity.user_id})
            return _unauthorized('main.verify', 'We could not load your session. Please verify again.')

        if not profile:
            if _wants_json():
                return {'error': 'Profile required'}, 403
            return redirect(url_for('main.create_profile'))

        g.identity = identity
        g.current_user = {
            'id': identity.user_id,
            'username': profile.get('username', ''),
            'bio': profile.get('bio') or '',
            'interests': profile.get('interests') or '',
            'is_verified': bool(profile.get('is_verified')),
            'avatar_url': profile.get('avatar_url'),
        }
        return view(*args, **kwargs)

    return wrapped


def _safe_next(default: str) -> str:
    target = request.form.get('next') or request.args.get('next') or ''
    if target.startswith('/') and not target.startswith('//'):
        return target
    return default


def _feed_tab(value: Optional[str]) -> str:
    return value if value in FEED_TABS else FEED_TABS[0]


# --- Landing & verification -----------------------------------------------


@main_bp.route('/')
def index() -> str:
    return render_template('index.html', verified=_verified_user() is not None)


@main_bp.route('/launch')
def launch() -> Response:
    """Send the visitor to the first step they have not completed yet."""

    identity = _verified_user()
    if identity is None:
        return redirect(url_for('main.verify'))

    try:
        profile = current_app.profile_service.get_user_profile(identity.user_id)
    except Exception:
        logger.warning('launch.profile_lookup_failed', exc_info=True, extra={'user_id': identity.user_id})
        return redirect(url_for('main.verify'))

    if not profile:
        return redirect(url_for('main.create_profile'))
    return redirect(url_for('main.feed'))


@main_bp.route('/verify', methods=['GET', 'POST'])
def verify() -> str | Response:
    token = request.form.get('token') if request.method == 'POST' else request.args.get('token')
    if request.method == 'POST' or token:
        try:
            identity = decode_verification_token(
                (token or '').strip(), current_app.config['VERIFICATION_JWT_SECRET']
            )
        except AuthError as exc:
            flash(exc.message, 'danger')
            logger.warning('verify.denied', extra={'status': exc.status_code, 'reason': exc.message})
            return (
                render_template('verify.html', verification_url=current_app.config['VERIFICATION_URL']),
                exc.status_code,
            )

        session['verified_user'] = identity.to_session()
        session.modified = True
        logger.info('verify.success', extra={'user_id': identity.user_id})
        return redirect(url_for('main.launch'))

    return render_template('verify.html', verification_url=current_app.config['VERIFICATION_URL'])


@main_bp.route('/logout')
def logout() -> Response:
    session.clear()
    flash('You have been signed out.', 'info')
    return redirect(url_for('main.index'))


# --- Profiles ---------------------------------------------------------------


@main_bp.route('/create-profile', methods=['GET', 'POST'])
@verified_required
def create_profile() -> str | Response:
    identity: VerifiedUser = g.identity
    profiles = current_app.profile_service

    if profiles.get_user_profile(identity.user_id):
        return redirect(url_for('main.feed'))

    form = {
        'username': request.form.get('username', ''),
        'bio': request.form.get('bio', ''),
        'interests': request.form.get('interests', ''),
    }

    if request.method == 'POST':
        try:
            avatar_url = None
            avatar = request.files.get('avatar')
            if avatar and avatar.filename:
                avatar_url = current_app.media_service.upload_avatar(avatar, identity.user_id)
            profiles.create_profile(
                username=form['username'],
                bio=form['bio'],
                interests=form['interests'],
                verified_user_id=identity.user_id,
                verification_date=identity.verification_date,
                avatar_url=avatar_url,
            )
        except ValueError as exc:
            flash(str(exc), 'danger')
            logger.info('profiles.create.rejected', extra={'user_id': identity.user_id, 'error': str(exc)})
            return render_template('create_profile.html', identity=identity, form=form), 400
        except Exception:
            flash('We could not create your profile. Please try again.', 'danger')
            logger.exception('profiles.create.error', extra={'user_id': identity.user_id})
            return render_template('create_profile.html', identity=identity, form=form), 500

        flash('Welcome to Hyumane!', 'success')
        return redirect(url_for('main.feed'))

    return render_template('create_profile.html', identity=identity, form=form)


@main_bp.route('/profile', methods=['GET', 'POST'])
@profile_required
def profile() -> str | Response:
    user = g.current_user

    if request.method == 'POST':
        try:
            avatar_url = None
            avatar = request.files.get('avatar')
            if avatar and avatar.filename:
                avatar_url = current_app.media_service.upload_avatar(avatar, user['id'])
            current_app.profile_service.update_profile(
                user['id'],
                username=request.form.get('username', user['username']),
                bio=request.form.get('bio', user['bio']),
                interests=request.form.get('interests', user['interests']),
                avatar_url=avatar_url,
            )
        except ValueError as exc:
            flash(str(exc), 'danger')
            logger.info('profiles.update.rejected', extra={'user_id': user['id'], 'error': str(exc)})
        except Exception:
            flash('We could not save your profile. Please try again.', 'danger')
            logger.exception('profiles.update.error', extra={'user_id': user['id']})
        else:
            flash('Profile updated.', 'success')
            logger.info('profiles.update.success', extra={'user_id': user['id']})
        return redirect(url_for('main.profile'))

    stats = current_app.profile_service.get_follow_stats(user['id'])
    return render_template('profile.html', user=user, stats=stats, editing=request.args.get('edit') == '1')


@main_bp.route('/profile/<user_id>')
@profile_required
def user_profile(user_id: str) -> str | Response:
    me = g.current_user
    if user_id == me['id']:
        return redirect(url_for('main.profile'))

    profiles = current_app.profile_service
    other = profiles.get_user_profile(user_id)
    if not other:
        flash('That member could not be found.', 'warning')
        return redirect(url_for('main.discover'))

    return render_template(
        'user_profile.html',
        user=other,
        stats=profiles.get_follow_stats(user_id),
        is_following=profiles.is_following(me['id'], user_id),
    )


# --- Discover & follows -----------------------------------------------------


@main_bp.route('/discover')
@profile_required
def discover() -> str:
    me = g.current_user
    query = (request.args.get('q') or '').strip()
    users = current_app.profile_service.get_all_users(me['id'], query=query)
    following = current_app.profile_service.following_map(
        me['id'], [user.get('verified_user_id') for user in users]
    )
    return render_template('discover.html', users=users, following=following, query=query)


@main_bp.route('/users/<user_id>/follow', methods=['POST'])
@profile_required
def follow_toggle(user_id: str) -> Response:
    me = g.current_user
    currently_following = request.form.get('following') == '1'
    try:
        current_app.profile_service.toggle_follow(me['id'], user_id, currently_following)
    except ValueError as exc:
        flash(str(exc), 'warning')
    except Exception:
        flash('We could not update that follow. Please try again.', 'danger')
        logger.exception('follows.toggle.error', extra={'user_id': me['id'], 'target': user_id})
    return redirect(_safe_next(url_for('main.discover')))


@main_bp.route('/users/<user_id>/message', methods=['POST'])
@profile_required
def start_chat(user_id: str) -> Response:
    me = g.current_user
    try:
        chat_id = current_app.chat_service.create_or_get_chat(me['id'], user_id)
    except ValueError as exc:
        flash(str(exc), 'warning')
        return redirect(_safe_next(url_for('main.discover')))
    except Exception:
        flash('We could not open that chat. Please try again.', 'danger')
        logger.exception('chat.open.error', extra={'user_id': me['id'], 'target': user_id})
        return redirect(_safe_next(url_for('main.discover')))
    return redirect(url_for('main.chat', chat_id=chat_id))


# --- Feed -------------------------------------------------------------------


@main_bp.route('/feed')
@profile_required
def feed() -> str:
    me = g.current_user
    tab = _feed_tab(request.args.get('tab'))
    posts = current_app.feed_service.get_posts(me['id'], following_only=tab == 'following')
    following = current_app.profile_service.following_map(me['id'], [post['author_id'] for post in posts])

    open_post = request.args.get('replies')
    replies: Dict[str, Any] = {}
    if open_post:
        replies[open_post] = current_app.feed_service.get_replies(open_post)

    return render_template(
        'feed.html',
        posts=posts,
        tab=tab,
        following=following,
        replies=replies,
        open_post=open_post,
    )


@main_bp.route('/feed/posts', methods=['POST'])
@profile_required
def create_post() -> Response:
    me = g.current_user
    tab = _feed_tab(request.form.get('tab'))
    content = request.form.get('content', '')
    image = request.files.get('image')

    try:
        image_url = None
        if image and image.filename:
            image_url = current_app.media_service.upload_post_image(image, me['id'])
        current_app.feed_service.create_post(content, me['id'], image_url=image_url)
    except ValueError as exc:
        flash(str(exc), 'warning')
    except Exception:
        flash('We could not share your post. Please try again.', 'danger')
        logger.exception('feed.create_post.error', extra={'user_id': me['id']})
    return redirect(url_for('main.feed', tab=tab))


@main_bp.route('/posts/<post_id>/like', methods=['POST'])
@profile_required
def like_toggle(post_id: str) -> Response:
    me = g.current_user
    currently_liked = request.form.get('liked') == '1'
    try:
        current_app.feed_service.toggle_like(post_id, me['id'], currently_liked)
    except Exception:
        flash('We could not update that like. Please try again.', 'danger')
        logger.exception('feed.toggle_like.error', extra={'user_id': me['id'], 'post_id': post_id})
    tab = _feed_tab(request.form.get('tab'))
    return redirect(url_for('main.feed', tab=tab, _anchor=f'post-{post_id}'))


@main_bp.route('/posts/<post_id>/replies', methods=['POST'])
@profile_required
def create_reply(post_id: str) -> Response:
    me = g.current_user
    try:
        current_app.feed_service.create_reply(post_id, request.form.get('content', ''), me['id'])
    except ValueError as exc:
        flash(str(exc), 'warning')
    except Exception:
        flash('We could not post your reply. Please try again.', 'danger')
        logger.exception('feed.create_reply.error', extra={'user_id': me['id'], 'post_id': post_id})
    tab = _feed_tab(request.form.get('tab'))
    return redirect(url_for('main.feed', tab=tab, replies=post_id, _anchor=f'post-{post_id}'))


# --- Chat -------------------------------------------------------------------


def _authorized_chat(chat_id: str) -> Dict[str, Any]:
    chat = current_app.chat_service.get_chat(chat_id)
    if not is_participant(chat, g.current_user['id']):
        abort(404)
    return chat


@main_bp.route('/chat')
@profile_required
def chat() -> str | Response:
    me = g.current_user
    chats = current_app.chat_service.get_chats(me['id'])
    chat_id = request.args.get('chat_id')

    selected: Optional[Dict[str, Any]] = None
    messages = []
    if chat_id:
        record = current_app.chat_service.get_chat(chat_id)
        if not is_participant(record, me['id']):
            flash('That conversation could not be found.', 'warning')
            return redirect(url_for('main.chat'))
        selected = next((item for item in chats if item['id'] == chat_id), None)
        if selected is None:
            selected = {'id': chat_id, 'name': 'Conversation', 'avatar': None}
        messages = current_app.chat_service.get_messages(chat_id, viewer_id=me['id'])

    return render_template('chat.html', chats=chats, selected=selected, messages=messages)


@main_bp.route('/chat/<chat_id>/messages', methods=['POST'])
@profile_required
def send_message(chat_id: str) -> Response:
    me = g.current_user
    _authorized_chat(chat_id)
    try:
        current_app.chat_service.send_message(chat_id, request.form.get('content', ''), me['id'])
    except ValueError as exc:
        flash(str(exc), 'warning')
    except Exception:
        flash('Your message was not sent. Please try again.', 'danger')
        logger.exception('chat.send_message.error', extra={'user_id': me['id'], 'chat_id': chat_id})
    return redirect(url_for('main.chat', chat_id=chat_id))


# --- Media ------------------------------------------------------------------


@main_bp.route('/media/<bucket>/<path:filename>')
def media(bucket: str, filename: str):
    try:
        directory = current_app.media_service.bucket_dir(bucket)
    except ValueError:
        abort(404)
    return send_from_directory(directory, filename, max_age=3600)


# --- JSON API ----------------------------------------------------------------


@main_bp.route('/api/feed')
@profile_required
def api_feed() -> Dict[str, Any]:
    me = g.current_user
    tab = _feed_tab(request.args.get('tab'))
    posts = current_app.feed_service.get_posts(me['id'], following_only=tab == 'following')
    following = current_app.profile_service.following_map(me['id'], [post['author_id'] for post in posts])
    return {'tab': tab, 'posts': posts, 'following': following}


@main_bp.route('/api/posts/<post_id>/replies')
@profile_required
def api_replies(post_id: str) -> Dict[str, Any]:
    return {'post_id': post_id, 'replies': current_app.feed_service.get_replies(post_id)}


@main_bp.route('/api/posts/<post_id>/like', methods=['POST'])
@profile_required
def api_like(post_id: str) -> Dict[str, Any] | Response:
    me = g.current_user
    payload = request.get_json(silent=True) or {}
    try:
        return current_app.feed_service.toggle_like(post_id, me['id'], bool(payload.get('liked')))
    except Exception:
        logger.exception('feed.toggle_like.error', extra={'user_id': me['id'], 'post_id': post_id})
        return {'error': 'Unable to update like'}, 500


@main_bp.route('/api/users/<user_id>/follow', methods=['POST'])
@profile_required
def api_follow(user_id: str) -> Dict[str, Any] | Response:
    me = g.current_user
    payload = request.get_json(silent=True) or {}
    profiles = current_app.profile_service
    try:
        state = profiles.toggle_follow(me['id'], user_id, bool(payload.get('following')))
    except ValueError as exc:
        return {'error': str(exc)}, 400
    except Exception:
        logger.exception('follows.toggle.error', extra={'user_id': me['id'], 'target': user_id})
        return {'error': 'Unable to update follow'}, 500
    return {'user_id': user_id, 'following': state, 'followers': profiles.get_follow_stats(user_id)['followers']}


@main_bp.route('/api/chats')
@profile_required
def api_chats() -> Dict[str, Any]:
    return {'chats': current_app.chat_service.get_chats(g.current_user['id'])}


@main_bp.route('/api/chats/<chat_id>/messages', methods=['GET', 'POST'])
@profile_required
def api_messages(chat_id: str) -> Dict[str, Any] | Response:
    me = g.current_user
    _authorized_chat(chat_id)
    service = current_app.chat_service

    if request.method == 'POST':
        payload = request.get_json(silent=True) or {}
        try:
            created = service.send_message(chat_id, payload.get('content', ''), me['id'])
        except ValueError as exc:
            return {'error': str(exc)}, 400
        except Exception:
            logger.exception('chat.send_message.error', extra={'user_id': me['id'], 'chat_id': chat_id})
            return {'error': 'Unable to send message'}, 500
        return {'message': service.describe_message(created, me['id'])}, 201

    return {'chat_id': chat_id, 'messages': service.get_messages(chat_id, viewer_id=me['id'])}


# --- Realtime streams ---------------------------------------------------------


def feed_event(change: Change) -> Optional[Dict[str, Any]]:
    """Translate a likes/replies change into what the feed page refreshes."""

    record = change.record()
    post_id = record.get('post_id')
    if not post_id:
        return None
    if change.table == 'likes':
        return {'type': 'like', 'event': change.event, 'post_id': post_id}
    if change.table == 'replies' and change.event == 'INSERT':
        return {'type': 'reply', 'post_id': post_id, 'reply_id': record.get('id')}
    return None


def chat_event(change: Change, user_id: str) -> Optional[Dict[str, Any]]:
    """Translate a messages/chats change into what the chat page splices in."""

    if change.table == 'messages' and change.event == 'INSERT':
        return {'type': 'message', 'message': current_app.chat_service.describe_message(change.new, user_id)}
    if change.table == 'chats' and is_participant(change.new, user_id):
        return {'type': 'chat', 'chat_id': change.new.get('id')}
    return None


def _event_stream(subscription: Subscription, translate) -> Response:
    keepalive = current_app.config['STREAM_KEEPALIVE_SECONDS']

    def generate():
        try:
            yield 'retry: 3000\n\n'
            while True:
                change = subscription.get(timeout=keepalive)
                if change is None:
                    yield ': keepalive\n\n'
                    continue
                payload = translate(change)
                if payload is not None:
                    yield format_sse(payload, event=payload['type'])
        finally:
            subscription.close()

    return Response(
        stream_with_context(generate()),
        mimetype='text/event-stream',
        headers={'Cache-Control': 'no-store', 'X-Accel-Buffering': 'no'},
    )


@main_bp.route('/api/stream/feed')
@profile_required
def stream_feed() -> Response:
    subscription = current_app.change_feed.subscribe(
        ChangeTopic('likes', '*'),
        ChangeTopic('replies', 'INSERT'),
    )
    return _event_stream(subscription, feed_event)


@main_bp.route('/api/stream/chat')
@profile_required
def stream_chat() -> Response:
    user_id = g.current_user['id']
    topics = [ChangeTopic('chats', 'UPDATE')]

    chat_id = request.args.get('chat_id')
    if chat_id:
        _authorized_chat(chat_id)
        topics.append(ChangeTopic('messages', 'INSERT', f'chat_id=eq.{chat_id}'))

    subscription = current_app.change_feed.subscribe(*topics)
    return _event_stream(subscription, lambda change: chat_event(change, user_id))
