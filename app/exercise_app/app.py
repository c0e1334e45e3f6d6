"""
Language Exercise Studio - Flask Application
JSON API for generating exercises and grading answers to their questions.
"""
import os
from typing import Callable, Optional

from flask import Blueprint, Flask, request, session, jsonify, current_app
from flask_cors import CORS

from config import config
from models import (
    db,
    User,
    Language,
    ProficiencyLevel,
    Question,
    VISIBILITIES,
)
from utils import (
    hash_password,
    verify_password,
    login_required,
    get_current_user,
    is_valid_uuid,
    get_text,
    list_texts,
    create_text_with_questions,
    load_question_context,
    record_user_response,
)
from services.exercise_generator import ExerciseGenerationError, count_words, generate_exercise
from services.feedback_evaluator import FeedbackEvaluator
from services.model_gateway import (
    ModelGatewayClient,
    ModelGatewayError,
    create_answer_verification_gateway,
    create_text_gateway,
    create_text_with_questions_gateway,
)

GATEWAY_FACTORIES = {
    'text': create_text_gateway,
    'text_with_questions': create_text_with_questions_gateway,
    'answer_verification': create_answer_verification_gateway,
}

DEFAULT_LANGUAGES = [
    ('en', 'English'),
    ('pl', 'Polish'),
    ('es', 'Spanish'),
    ('de', 'German'),
    ('fr', 'French'),
]

DEFAULT_LEVELS = [
    ('A1', 'Beginner'),
    ('A2', 'Elementary'),
    ('B1', 'Intermediate'),
    ('B2', 'Upper intermediate'),
    ('C1', 'Advanced'),
    ('C2', 'Proficient'),
]

api = Blueprint('api', __name__)


def default_gateway_factory(kind: str) -> ModelGatewayClient:
    """Build a fresh gateway client for one use case from the app config."""
    return GATEWAY_FACTORIES[kind](current_app.config)


def get_gateway(kind: str) -> ModelGatewayClient:
    return current_app.extensions['model_gateway_factory'](kind)


def get_feedback_evaluator() -> FeedbackEvaluator:
    cfg = current_app.config
    return FeedbackEvaluator(
        get_gateway('answer_verification'),
        context_loader=load_question_context,
        keyword_divisor=cfg['HEURISTIC_KEYWORD_DIVISOR'],
        min_keywords=cfg['HEURISTIC_MIN_KEYWORDS'],
        excerpt_chars=cfg['PASSAGE_EXCERPT_CHARS'],
    )


def create_app(
    config_name: Optional[str] = None,
    gateway_factory: Optional[Callable[[str], ModelGatewayClient]] = None,
) -> Flask:
    """Application factory.

    Args:
        config_name: Key into ``config`` (defaults to FLASK_ENV)
        gateway_factory: Callable returning a gateway client for a use case
            ('text', 'text_with_questions', 'answer_verification')
    """
    app = Flask(__name__)
    app.config.from_object(config[config_name or os.getenv('FLASK_ENV', 'development')])

    # Initialize extensions
    db.init_app(app)
    CORS(app, resources={r"/*": {"origins": app.config['CORS_ALLOWED_ORIGINS']}}, supports_credentials=True)
    app.extensions['model_gateway_factory'] = gateway_factory or default_gateway_factory

    app.register_blueprint(api)
    app.register_error_handler(404, not_found)
    app.register_error_handler(405, method_not_allowed)
    app.register_error_handler(500, internal_error)
    return app


def init_database(app: Flask):
    """Create tables and seed languages and proficiency levels if needed."""
    with app.app_context():
        db.create_all()

        for code, name in DEFAULT_LANGUAGES:
            if not Language.query.filter_by(code=code).first():
                db.session.add(Language(code=code, name=name))

        for order, (name, description) in enumerate(DEFAULT_LEVELS):
            if not ProficiencyLevel.query.filter_by(name=name).first():
                db.session.add(ProficiencyLevel(name=name, description=description, display_order=order))

        try:
            db.session.commit()
            app.logger.info("[DATABASE] Initialized successfully")
        except Exception as e:
            db.session.rollback()
            app.logger.error(f"[SEED ERROR] {e}")


# ============================================================================
# AUTHENTICATION ROUTES
# ============================================================================

@api.route('/auth/register', methods=['POST'])
def register():
    """Create an account and log it in."""
    data = request.get_json(silent=True) or {}
    email = str(data.get('email', '')).strip().lower()
    password = str(data.get('password', ''))
    full_name = (data.get('full_name') or '').strip() or None

    if not email or not password:
        return jsonify({'error': 'Email and password are required.'}), 400

    if len(password) < 8:
        return jsonify({'error': 'Password must be at least 8 characters.'}), 400

    if User.query.filter_by(email=email).first():
        return jsonify({'error': 'Email already registered.'}), 409

    user = User(email=email, password_hash=hash_password(password), full_name=full_name)
    db.session.add(user)
    db.session.commit()

    session['user_id'] = user.id
    session.permanent = True
    current_app.logger.info(f"Registered user {user.id}")
    return jsonify(user.to_dict()), 201


@api.route('/auth/login', methods=['POST'])
def login():
    data = request.get_json(silent=True) or {}
    email = str(data.get('email', '')).strip().lower()
    password = str(data.get('password', ''))

    user = User.query.filter_by(email=email).first()
    if user and verify_password(password, user.password_hash):
        session['user_id'] = user.id
        session.permanent = True
        return jsonify(user.to_dict())

    return jsonify({'error': 'Invalid email or password.'}), 401


@api.route('/auth/logout', methods=['POST'])
def logout():
    session.clear()
    return jsonify({'message': 'Logged out'})


@api.route('/auth/change-password', methods=['POST'])
@login_required
def change_password():
    user = get_current_user()
    data = request.get_json(silent=True) or {}
    current_password = str(data.get('current_password', ''))
    new_password = str(data.get('new_password', ''))

    if not verify_password(current_password, user.password_hash):
        return jsonify({'error': 'Current password is incorrect.'}), 400
    if len(new_password) < 8:
        return jsonify({'error': 'Password must be at least 8 characters.'}), 400

    user.password_hash = hash_password(new_password)
    db.session.commit()
    return jsonify({'message': 'Password updated'})


# ============================================================================
# REFERENCE DATA ROUTES
# ============================================================================

@api.route('/languages')
def languages():
    """Active languages ordered by name."""
    rows = Language.query.filter_by(is_active=True).order_by(Language.name).all()
    return jsonify([row.to_dict() for row in rows])


@api.route('/proficiency-levels')
def proficiency_levels():
    rows = ProficiencyLevel.query.order_by(ProficiencyLevel.display_order).all()
    return jsonify([row.to_dict() for row in rows])


# ============================================================================
# EXERCISE ROUTES
# ============================================================================

def _parse_int(value, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


@api.route('/exercises', methods=['GET'])
def list_exercises():
    """Paginated texts: public ones plus the caller's private ones."""
    cfg = current_app.config
    limit = min(max(_parse_int(request.args.get('limit'), cfg['DEFAULT_PAGE_LIMIT']), 1), cfg['MAX_PAGE_LIMIT'])
    offset = max(_parse_int(request.args.get('offset'), 0), 0)
    visibility = request.args.get('visibility')
    if visibility and visibility not in VISIBILITIES:
        return jsonify({'error': 'Invalid visibility filter'}), 400

    texts, total = list_texts(
        get_current_user(),
        language_id=request.args.get('language_id'),
        proficiency_level_id=request.args.get('proficiency_level_id'),
        visibility=visibility,
        limit=limit,
        offset=offset,
    )
    return jsonify({
        'texts': [text.to_dict() for text in texts],
        'pagination': {
            'total': total,
            'limit': limit,
            'offset': offset,
            'hasMore': offset + limit < total,
        },
    })


def _validate_create_exercise(data: dict) -> list:
    issues = []
    if not is_valid_uuid(data.get('language_id')):
        issues.append('language_id must be a UUID')
    if not is_valid_uuid(data.get('proficiency_level_id')):
        issues.append('proficiency_level_id must be a UUID')
    topic = data.get('topic')
    if not isinstance(topic, str) or not topic.strip():
        issues.append('topic is required')
    if data.get('visibility') not in VISIBILITIES:
        issues.append('visibility must be one of: public, private')
    return issues


@api.route('/exercises', methods=['POST'])
def create_exercise():
    """Generate a text with questions and store both."""
    data = request.get_json(silent=True) or {}
    issues = _validate_create_exercise(data)
    if issues:
        return jsonify({'error': 'Invalid request data', 'details': issues}), 400

    user = get_current_user()
    if not user:
        return jsonify({'error': 'Authentication required'}), 401

    language = db.session.get(Language, data['language_id'])
    level = db.session.get(ProficiencyLevel, data['proficiency_level_id'])
    if not language or not level:
        return jsonify({'error': 'Language or proficiency level not found'}), 400

    topic = data['topic'].strip()
    try:
        generated = generate_exercise(topic, language, level, client=get_gateway('text_with_questions'))
    except (ModelGatewayError, ExerciseGenerationError) as e:
        current_app.logger.error(f"[EXERCISE] Generation failed for topic {topic}: {e}")
        return jsonify({'error': 'Failed to generate content', 'details': str(e)}), 500

    try:
        text = create_text_with_questions(
            user,
            title=topic,
            content=generated.text,
            language_id=language.id,
            proficiency_level_id=level.id,
            topic=topic,
            visibility=data['visibility'],
            word_count=count_words(generated.text),
            question_contents=[q.question for q in generated.questions],
        )
    except Exception as e:
        current_app.logger.error(f"[EXERCISE] Failed to store generated exercise: {e}")
        return jsonify({'error': 'Failed to create text', 'details': str(e)}), 500

    current_app.logger.info(f"[EXERCISE] Created text {text.id} with {len(text.questions)} questions")
    return jsonify(text.to_dict()), 201


def _load_owned_or_visible_text(text_id: str):
    """Resolve a text for the current user, returning (text, error_response)."""
    if not is_valid_uuid(text_id):
        return None, (jsonify({'error': 'Invalid text ID format'}), 400)

    user = get_current_user()
    if not user:
        return None, (jsonify({'error': 'Authentication required'}), 401)

    text = get_text(text_id)
    if not text:
        return None, (jsonify({'error': 'Text not found'}), 404)

    if not text.is_visible_to(user.id):
        return None, (jsonify({'error': 'You do not have permission to access this text'}), 403)

    return text, None


@api.route('/exercises/<text_id>', methods=['GET'])
def get_exercise(text_id):
    """Text with nested language, proficiency level and questions."""
    text, error = _load_owned_or_visible_text(text_id)
    if error:
        return error
    return jsonify(text.to_dict())


@api.route('/exercises/<text_id>', methods=['PATCH'])
def update_exercise_visibility(text_id):
    text, error = _load_owned_or_visible_text(text_id)
    if error:
        return error
    if text.user_id != get_current_user().id:
        return jsonify({'error': 'Only the owner can change visibility'}), 403

    visibility = (request.get_json(silent=True) or {}).get('visibility')
    if visibility not in VISIBILITIES:
        return jsonify({'error': 'visibility must be one of: public, private'}), 400

    text.visibility = visibility
    db.session.commit()
    return jsonify({'id': text.id, 'visibility': text.visibility, 'updated_at': text.updated_at.isoformat()})


@api.route('/exercises/<text_id>', methods=['DELETE'])
def delete_exercise(text_id):
    text, error = _load_owned_or_visible_text(text_id)
    if error:
        return error
    if text.user_id != get_current_user().id:
        return jsonify({'error': 'Only the owner can delete this text'}), 403

    text.is_deleted = True
    db.session.commit()
    return '', 204


# ============================================================================
# ANSWER SUBMISSION
# ============================================================================

def _validate_submission(data: dict) -> list:
    issues = []
    response_text = data.get('response_text')
    if not isinstance(response_text, str) or not response_text.strip():
        issues.append('response_text is required')
    response_time = data.get('response_time')
    if isinstance(response_time, bool) or not isinstance(response_time, int) or response_time <= 0:
        issues.append('response_time must be a positive integer')
    return issues


@api.route('/questions/<question_id>/responses', methods=['POST'])
def submit_response(question_id):
    """Grade an answer and store it as a new response."""
    if not is_valid_uuid(question_id):
        return jsonify({'error': 'Invalid question ID format'}), 400

    data = request.get_json(silent=True) or {}
    issues = _validate_submission(data)
    if issues:
        return jsonify({'error': 'Invalid request data', 'details': issues}), 400

    user = get_current_user()
    if not user:
        return jsonify({'error': 'Authentication required'}), 401

    question = db.session.get(Question, question_id)
    if not question or question.text is None or question.text.is_deleted:
        return jsonify({'error': 'Question not found'}), 404

    if not question.text.is_visible_to(user.id):
        return jsonify({'error': 'You do not have permission to answer this question'}), 403

    response_text = data['response_text']
    result = get_feedback_evaluator().evaluate(question.id, response_text)

    try:
        response = record_user_response(
            user.id,
            question.id,
            response_text,
            result.is_correct,
            result.feedback,
            data['response_time'],
        )
    except Exception as e:
        db.session.rollback()
        current_app.logger.error(f"Failed to save response for question {question.id}: {e}")
        return jsonify({'error': 'Failed to save response', 'details': str(e)}), 500

    current_app.logger.info(
        f"Stored response {response.id} for question {question.id} (correct={result.is_correct}, source={result.source})"
    )
    return jsonify(response.to_dict()), 201


# ============================================================================
# ERROR HANDLERS
# ============================================================================

def not_found(error):
    """404 error handler."""
    return jsonify({'error': 'Not found'}), 404


def method_not_allowed(error):
    return jsonify({'error': 'Method not allowed'}), 405


def internal_error(error):
    """500 error handler."""
    db.session.rollback()
    return jsonify({'error': 'Internal server error'}), 500


# ============================================================================
# INITIALIZATION
# ============================================================================

if __name__ == '__main__':
    app = create_app()
    init_database(app)
    app.run(host='0.0.0.0', port=int(os.getenv('PORT', 1111)), debug=True)
