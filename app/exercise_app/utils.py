"""Utility functions for the Flask application."""
import bcrypt
from functools import wraps
from typing import Optional
from uuid import UUID

from flask import session, jsonify
from sqlalchemy import and_, or_

from models import (
    db,
    User,
    Text,
    Question,
    UserResponse,
    VISIBILITY_PUBLIC,
    VISIBILITY_PRIVATE,
)
from services.feedback_evaluator import QuestionContext


def hash_password(password: str) -> str:
    """Hash a password using bcrypt."""
    password_bytes = password.encode('utf-8')
    salt = bcrypt.gensalt()
    hashed = bcrypt.hashpw(password_bytes, salt)
    return hashed.decode('utf-8')


def verify_password(password: str, password_hash: str) -> bool:
    """Verify a password against a bcrypt hash."""
    password_bytes = password.encode('utf-8')
    hash_bytes = password_hash.encode('utf-8')
    return bcrypt.checkpw(password_bytes, hash_bytes)


def login_required(f):
    """Decorator to require login for an API route."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if get_current_user() is None:
            return jsonify({'error': 'Authentication required'}), 401
        return f(*args, **kwargs)
    return decorated_function


def get_current_user() -> Optional[User]:
    """Get the currently logged-in user."""
    user_id = session.get('user_id')
    if user_id:
        return db.session.get(User, user_id)
    return None


def is_valid_uuid(value) -> bool:
    try:
        UUID(str(value))
    except ValueError:
        return False
    return True


def get_text(text_id: str) -> Optional[Text]:
    """Fetch a non-deleted text with its relations."""
    return Text.query.filter_by(id=text_id, is_deleted=False).first()


def list_texts(
    user: Optional[User],
    language_id: Optional[str] = None,
    proficiency_level_id: Optional[str] = None,
    visibility: Optional[str] = None,
    limit: int = 12,
    offset: int = 0,
):
    """Page through texts visible to ``user``, newest first.

    Anonymous callers only see public texts; requesting private texts
    anonymously yields an empty page. Returns ``(texts, total)``.
    """
    query = Text.query.filter(Text.is_deleted.is_(False))

    if language_id:
        query = query.filter(Text.language_id == language_id)
    if proficiency_level_id:
        query = query.filter(Text.proficiency_level_id == proficiency_level_id)

    if visibility:
        if visibility == VISIBILITY_PRIVATE and user is None:
            return [], 0
        query = query.filter(Text.visibility == visibility)
        if visibility == VISIBILITY_PRIVATE:
            query = query.filter(Text.user_id == user.id)
    elif user is not None:
        query = query.filter(
            or_(
                Text.visibility == VISIBILITY_PUBLIC,
                and_(Text.visibility == VISIBILITY_PRIVATE, Text.user_id == user.id),
            )
        )
    else:
        query = query.filter(Text.visibility == VISIBILITY_PUBLIC)

    total = query.count()
    texts = query.order_by(Text.created_at.desc()).offset(offset).limit(limit).all()
    return texts, total


def create_text_with_questions(
    user: User,
    title: str,
    content: str,
    language_id: str,
    proficiency_level_id: str,
    topic: str,
    visibility: str,
    word_count: int,
    question_contents,
) -> Text:
    """Insert a text, then its questions; the text row is removed if the questions fail."""
    text = Text(
        title=title,
        content=content,
        language_id=language_id,
        proficiency_level_id=proficiency_level_id,
        topic=topic,
        visibility=visibility,
        word_count=word_count,
        user_id=user.id,
    )
    db.session.add(text)
    db.session.commit()

    try:
        for position, question_content in enumerate(question_contents):
            db.session.add(Question(text_id=text.id, content=question_content, position=position))
        db.session.commit()
    except Exception:
        db.session.rollback()
        db.session.delete(text)
        db.session.commit()
        raise

    return text


def load_question_context(question_id: str) -> Optional[QuestionContext]:
    """Load a question with its text, language and proficiency level for grading."""
    question = db.session.get(Question, question_id)
    if question is None or question.text is None:
        return None
    text = question.text
    return QuestionContext(
        question_id=question.id,
        question=question.content,
        passage=text.content,
        language=text.language.name if text.language else "English",
        language_code=text.language.code if text.language else "en",
        proficiency_level=text.proficiency_level.name if text.proficiency_level else "A1",
    )


def record_user_response(
    user_id: str,
    question_id: str,
    response_text: str,
    is_correct: bool,
    feedback: Optional[str],
    response_time: int,
) -> UserResponse:
    """Insert one graded response. Every submission is a new row."""
    response = UserResponse(
        user_id=user_id,
        question_id=question_id,
        response_text=response_text,
        is_correct=is_correct,
        feedback=feedback,
        response_time=response_time,
    )
    db.session.add(response)
    db.session.commit()
    return response
