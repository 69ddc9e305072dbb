import enum

from sqlalchemy import (
    Column,
    Integer,
    String,
    Text,
    DateTime,
    Boolean,
    Float,
    JSON,
    ForeignKey,
    CheckConstraint,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func  # Für Default-Zeitstempel
from .database import Base


class AggregationType(str, enum.Enum):
    SUM = "SUM"
    AVERAGE = "AVERAGE"
    WEIGHTED_AVERAGE = "WEIGHTED_AVERAGE"
    MAX = "MAX"
    MIN = "MIN"


class QuestionType(str, enum.Enum):
    SINGLE_SELECT = "single_select"
    MULTI_SELECT = "multi_select"
    TEXT = "text"


SELECT_TYPES = {QuestionType.SINGLE_SELECT.value, QuestionType.MULTI_SELECT.value}


class Pillar(Base):
    __tablename__ = "pillars"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    name = Column(String, unique=True, nullable=False)
    description = Column(Text, nullable=True)
    weightage = Column(Float, nullable=False, default=1.0)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True), onupdate=func.now(), server_default=func.now()
    )

    __mapper_args__ = {"eager_defaults": True}


class Lever(Base):
    __tablename__ = "levers"
    __table_args__ = (UniqueConstraint("pillar_id", "name", name="uq_lever_pillar_name"),)

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    pillar_id = Column(Integer, ForeignKey("pillars.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    weightage = Column(Float, nullable=False, default=1.0)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True), onupdate=func.now(), server_default=func.now()
    )

    __mapper_args__ = {"eager_defaults": True}


class Variable(Base):
    __tablename__ = "variables"
    __table_args__ = (
        # Genau einer von lever_id / parent_id ist gesetzt
        CheckConstraint(
            "(lever_id IS NULL) <> (parent_id IS NULL)", name="ck_variable_single_owner"
        ),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    weightage = Column(Float, nullable=False, default=1.0)
    lever_id = Column(Integer, ForeignKey("levers.id"), nullable=True, index=True)
    parent_id = Column(Integer, ForeignKey("variables.id"), nullable=True, index=True)
    level = Column(Integer, nullable=False, default=0)
    path = Column(Text, nullable=False)
    aggregation_type = Column(String, nullable=False, default=AggregationType.SUM.value)
    order = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True), onupdate=func.now(), server_default=func.now()
    )

    # Optimistic locking: jedes UPDATE prüft und erhöht version
    __mapper_args__ = {"version_id_col": version, "eager_defaults": True}

    def __repr__(self) -> str:
        return f"<Variable(id={self.id}, path={self.path!r}, level={self.level})>"


class VariableQuestion(Base):
    __tablename__ = "variable_questions"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    variable_id = Column(Integer, ForeignKey("variables.id"), nullable=False, index=True)
    text = Column(Text, nullable=False)
    type = Column(String, nullable=False)  # single_select, multi_select, text
    options = Column(JSON, nullable=True)  # [{text, absoluteScore, internalScore}]
    required = Column(Boolean, nullable=False, default=True)
    weightage = Column(Float, nullable=False, default=1.0)
    order = Column(Integer, nullable=False, default=0)
    group_id = Column(String, nullable=True)
    is_group_lead = Column(Boolean, nullable=False, default=False)
    requires_evidence = Column(Boolean, nullable=False, default=False)
    evidence_description = Column(Text, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True), onupdate=func.now(), server_default=func.now()
    )

    __mapper_args__ = {"eager_defaults": True}


class Survey(Base):
    __tablename__ = "surveys"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    title = Column(String, index=True, nullable=False)
    description = Column(Text, nullable=True)
    category = Column(String, nullable=True)
    start_date = Column(DateTime(timezone=True), nullable=True)
    end_date = Column(DateTime(timezone=True), nullable=True)
    allow_anonymous = Column(Boolean, nullable=False, default=False)
    max_responses = Column(Integer, nullable=True)
    is_published = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)
    selection = Column(JSON, nullable=True)  # Auswahl, aus der die Fragen stammen
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True), onupdate=func.now(), server_default=func.now()
    )

    __mapper_args__ = {"eager_defaults": True}

    questions = relationship(
        "SurveyQuestion",
        back_populates="survey",
        order_by="SurveyQuestion.order",
        cascade="all, delete-orphan",
    )


class SurveyQuestion(Base):
    """Eingefrorene Kopie einer VariableQuestion zum Zeitpunkt der Erstellung."""

    __tablename__ = "survey_questions"

    id = Column(Integer, primary_key=True, index=True)
    survey_id = Column(Integer, ForeignKey("surveys.id"), nullable=False, index=True)
    variable_question_id = Column(
        Integer, ForeignKey("variable_questions.id"), nullable=True, index=True
    )
    text = Column(Text, nullable=False)
    type = Column(String, nullable=False)
    options = Column(JSON, nullable=True)
    required = Column(Boolean, nullable=False, default=True)
    weight = Column(Float, nullable=False, default=1.0)
    order = Column(Integer, nullable=False, default=0)
    group_id = Column(String, nullable=True)
    is_group_lead = Column(Boolean, nullable=False, default=False)
    requires_evidence = Column(Boolean, nullable=False, default=False)
    evidence_description = Column(Text, nullable=True)

    survey = relationship("Survey", back_populates="questions")


class Response(Base):
    __tablename__ = "responses"

    id = Column(Integer, primary_key=True, index=True)
    survey_id = Column(Integer, ForeignKey("surveys.id"), nullable=False, index=True)
    respondent_id = Column(String, nullable=True, index=True)
    score = Column(Float, nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True), onupdate=func.now(), server_default=func.now()
    )

    # Eine Antwort pro Teilnehmer und Umfrage; anonyme (NULL) sind ausgenommen
    __table_args__ = (
        UniqueConstraint("survey_id", "respondent_id", name="uq_response_survey_respondent"),
    )
    __mapper_args__ = {"eager_defaults": True}

    answers = relationship(
        "Answer", back_populates="response", cascade="all, delete-orphan"
    )


class Answer(Base):
    __tablename__ = "answers"
    __table_args__ = (
        UniqueConstraint("response_id", "survey_question_id", name="uq_answer_question"),
    )

    id = Column(Integer, primary_key=True, index=True)
    response_id = Column(Integer, ForeignKey("responses.id"), nullable=False, index=True)
    survey_question_id = Column(
        Integer, ForeignKey("survey_questions.id"), nullable=False, index=True
    )
    value = Column(JSON, nullable=True)  # str oder Liste für multi_select
    evidence = Column(Text, nullable=True)
    score = Column(Float, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    response = relationship("Response", back_populates="answers")
