"""SQLAlchemy database models for the language exercise app."""
from datetime import datetime, timezone
import sqlite3
from uuid import uuid4

from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import event
from sqlalchemy.engine import Engine

db = SQLAlchemy()

VISIBILITY_PUBLIC = 'public'
VISIBILITY_PRIVATE = 'private'
VISIBILITIES = (VISIBILITY_PUBLIC, VISIBILITY_PRIVATE)


@event.listens_for(Engine, "connect")
def _set_sqlite_pragma(dbapi_connection, connection_record):
    """Configure SQLite connections for better concurrency."""
    if isinstance(dbapi_connection, sqlite3.Connection):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON;")
        cursor.execute("PRAGMA busy_timeout=15000;")
        cursor.close()


def utcnow():
    """Get current UTC time."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


def _iso(value):
    return value.isoformat() if value else None


class User(db.Model):
    """User account model."""
    __tablename__ = 'users'

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    email = db.Column(db.String(255), unique=True, index=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    full_name = db.Column(db.String(255), nullable=True)
    is_admin = db.Column(db.Boolean, default=False, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    # Relationships
    texts = db.relationship('Text', back_populates='user')
    responses = db.relationship('UserResponse', back_populates='user', cascade='all, delete-orphan')

    def __repr__(self):
        return f'<User {self.email}>'

    def to_dict(self):
        return {
            'user_id': self.id,
            'email': self.email,
            'full_name': self.full_name,
            'is_admin': self.is_admin,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }


class Language(db.Model):
    """Target language an exercise can be generated in."""
    __tablename__ = 'languages'

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    code = db.Column(db.String(16), unique=True, nullable=False)
    name = db.Column(db.String(100), nullable=False)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self):
        return f'<Language {self.code}>'

    def to_dict(self):
        return {
            'id': self.id,
            'code': self.code,
            'name': self.name,
            'is_active': self.is_active,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }


class ProficiencyLevel(db.Model):
    """CEFR-style proficiency level (A1, B2, ...)."""
    __tablename__ = 'proficiency_levels'

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    name = db.Column(db.String(50), unique=True, nullable=False)
    description = db.Column(db.Text, nullable=True)
    display_order = db.Column(db.Integer, default=0, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self):
        return f'<ProficiencyLevel {self.name}>'

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'description': self.description,
            'display_order': self.display_order,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }


class Text(db.Model):
    """Generated reading passage; its content never changes after creation."""
    __tablename__ = 'texts'

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    title = db.Column(db.String(255), nullable=False)
    content = db.Column(db.Text, nullable=False)
    language_id = db.Column(db.String(36), db.ForeignKey('languages.id'), nullable=False)
    proficiency_level_id = db.Column(db.String(36), db.ForeignKey('proficiency_levels.id'), nullable=False)
    topic = db.Column(db.String(255), nullable=False)
    visibility = db.Column(db.String(20), default=VISIBILITY_PRIVATE, nullable=False)
    user_id = db.Column(db.String(36), db.ForeignKey('users.id', ondelete='SET NULL'), nullable=True, index=True)
    word_count = db.Column(db.Integer, default=0, nullable=False)
    is_deleted = db.Column(db.Boolean, default=False, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    # Relationships
    language = db.relationship('Language')
    proficiency_level = db.relationship('ProficiencyLevel')
    user = db.relationship('User', back_populates='texts')
    questions = db.relationship(
        'Question',
        back_populates='text',
        cascade='all, delete-orphan',
        order_by='Question.position',
    )

    def __repr__(self):
        return f'<Text id={self.id} topic={self.topic}>'

    def is_visible_to(self, user_id) -> bool:
        return self.visibility == VISIBILITY_PUBLIC or self.user_id == user_id

    def to_dict(self, include_questions: bool = True):
        """Serialize the text with its language, level and questions nested."""
        data = {
            'id': self.id,
            'title': self.title,
            'content': self.content,
            'language_id': self.language_id,
            'language': self.language.to_dict() if self.language else None,
            'proficiency_level_id': self.proficiency_level_id,
            'proficiency_level': self.proficiency_level.to_dict() if self.proficiency_level else None,
            'topic': self.topic,
            'visibility': self.visibility,
            'word_count': self.word_count,
            'user_id': self.user_id,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }
        if include_questions:
            data['questions'] = [q.to_dict() for q in self.questions]
        return data


class Question(db.Model):
    """Comprehension question attached to a text. Immutable after creation."""
    __tablename__ = 'questions'

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    text_id = db.Column(db.String(36), db.ForeignKey('texts.id', ondelete='CASCADE'), nullable=False, index=True)
    content = db.Column(db.Text, nullable=False)
    position = db.Column(db.Integer, default=0, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    # Relationships
    text = db.relationship('Text', back_populates='questions')
    responses = db.relationship('UserResponse', back_populates='question', cascade='all, delete-orphan')

    def __repr__(self):
        return f'<Question id={self.id} text={self.text_id}>'

    def to_dict(self):
        return {
            'id': self.id,
            'text_id': self.text_id,
            'content': self.content,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }


class UserResponse(db.Model):
    """Graded answer. One row per submission attempt, never updated."""
    __tablename__ = 'user_responses'

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    question_id = db.Column(db.String(36), db.ForeignKey('questions.id', ondelete='CASCADE'), nullable=False, index=True)
    user_id = db.Column(db.String(36), db.ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)
    response_text = db.Column(db.Text, nullable=False)
    is_correct = db.Column(db.Boolean, default=False, nullable=False)
    feedback = db.Column(db.Text, nullable=True)
    response_time = db.Column(db.Integer, nullable=False)  # milliseconds
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow, nullable=False)

    # Relationships
    question = db.relationship('Question', back_populates='responses')
    user = db.relationship('User', back_populates='responses')

    def __repr__(self):
        return f'<UserResponse user={self.user_id} question={self.question_id} correct={self.is_correct}>'

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'question_id': self.question_id,
            'response_text': self.response_text,
            'is_correct': self.is_correct,
            'feedback': self.feedback,
            'response_time': self.response_time,
            'created_at': _iso(self.created_at),
        }
