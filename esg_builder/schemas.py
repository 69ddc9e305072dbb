from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .models import SELECT_TYPES, AggregationType, QuestionType


# --- Pillars & Levers ---


class PillarBase(BaseModel):
    name: str = Field(..., min_length=2)
    description: Optional[str] = None
    weightage: float = Field(default=1.0, ge=0)


class PillarCreate(PillarBase):
    pass


class PillarUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=2)
    description: Optional[str] = None
    weightage: Optional[float] = Field(default=None, ge=0)


class PillarResponse(PillarBase):
    id: int
    is_active: bool
    lever_count: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class LeverBase(BaseModel):
    name: str = Field(..., min_length=2)
    description: Optional[str] = None
    weightage: float = Field(default=1.0, ge=0)


class LeverCreate(LeverBase):
    pillar_id: int


class LeverUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=2)
    description: Optional[str] = None
    weightage: Optional[float] = Field(default=None, ge=0)


class LeverResponse(LeverBase):
    id: int
    pillar_id: int
    is_active: bool
    variable_count: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class ToggleRequest(BaseModel):
    is_active: bool


class MessageResponse(BaseModel):
    message: str


# --- Questions ---


class QuestionOption(BaseModel):
    text: str = Field(..., min_length=1)
    absoluteScore: float = 0.0
    internalScore: Optional[float] = None


class VariableQuestionBase(BaseModel):
    text: str = Field(..., min_length=1)
    type: QuestionType
    options: Optional[List[QuestionOption]] = None
    required: bool = True
    weightage: float = Field(default=1.0, ge=0)
    order: int = 0
    group_id: Optional[str] = None
    is_group_lead: bool = False
    requires_evidence: bool = False
    evidence_description: Optional[str] = None

    @model_validator(mode="after")
    def check_options(self):
        if self.type.value in SELECT_TYPES and not self.options:
            raise ValueError(f"options are required for {self.type.value} questions")
        if self.type == QuestionType.TEXT:
            self.options = None
        return self


class VariableQuestionCreate(VariableQuestionBase):
    variable_id: int


class VariableQuestionUpdate(BaseModel):
    text: Optional[str] = Field(default=None, min_length=1)
    type: Optional[QuestionType] = None
    options: Optional[List[QuestionOption]] = None
    required: Optional[bool] = None
    weightage: Optional[float] = Field(default=None, ge=0)
    order: Optional[int] = None
    group_id: Optional[str] = None
    is_group_lead: Optional[bool] = None
    requires_evidence: Optional[bool] = None
    evidence_description: Optional[str] = None
    is_active: Optional[bool] = None


class VariableQuestionResponse(BaseModel):
    id: int
    variable_id: int
    text: str
    type: str
    options: Optional[List[Dict[str, Any]]] = None
    required: bool
    weightage: float
    order: int
    group_id: Optional[str] = None
    is_group_lead: bool = False
    requires_evidence: bool = False
    evidence_description: Optional[str] = None
    is_active: bool = True

    model_config = ConfigDict(from_attributes=True)


class QuestionImportRecord(BaseModel):
    """One row as produced by a spreadsheet import; validated per row."""

    variable_id: Optional[int] = None
    text: Optional[str] = None
    type: Optional[str] = None
    options: Optional[List[Dict[str, Any]]] = None
    required: bool = True
    weightage: float = 1.0
    order: int = 0
    group_id: Optional[str] = None
    is_group_lead: bool = False
    requires_evidence: bool = False
    evidence_description: Optional[str] = None


class BulkImportRequest(BaseModel):
    records: List[QuestionImportRecord]


class BulkImportResponse(BaseModel):
    created: int
    question_ids: List[int] = []
    errors: List[str] = []


# --- Variables ---


class VariableCreate(BaseModel):
    name: str = Field(..., min_length=2)
    description: Optional[str] = None
    weightage: float = Field(default=1.0, ge=0)
    parent_id: Optional[int] = None
    lever_id: Optional[int] = None
    aggregation_type: AggregationType = AggregationType.SUM
    order: int = 0


class VariableUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=2)
    description: Optional[str] = None
    weightage: Optional[float] = Field(default=None, ge=0)
    aggregation_type: Optional[AggregationType] = None
    order: Optional[int] = None
    expected_version: Optional[int] = None


class VariableMove(BaseModel):
    new_parent_id: Optional[int] = None
    new_lever_id: Optional[int] = None


class VariableClone(BaseModel):
    target_lever_id: Optional[int] = None
    target_parent_id: Optional[int] = None


class CanMoveResponse(BaseModel):
    variable_id: int
    new_parent_id: int
    can_move: bool


class VariableResponse(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    weightage: float
    parent_id: Optional[int] = None
    lever_id: Optional[int] = None
    level: int
    path: str
    aggregation_type: str
    order: int
    is_active: bool
    version: int

    model_config = ConfigDict(from_attributes=True)


class VariableListItem(VariableResponse):
    resolved_lever_id: Optional[int] = None
    resolved_pillar_id: Optional[int] = None


class VariableTreeNode(VariableResponse):
    questions: List[VariableQuestionResponse] = []
    children: List["VariableTreeNode"] = []


class VariableStats(BaseModel):
    direct_children: int
    direct_questions: int
    total_descendants: int
    total_questions: int
    level: int
    path: str


class DeletionResponse(BaseModel):
    variable_id: int
    kind: str
    deleted_questions: int = 0
    deleted_answers: int = 0
    affected_responses: int = 0
    children_reassigned: List[int] = []

    model_config = ConfigDict(from_attributes=True)


class RepairResponse(BaseModel):
    lever_id: int
    nodes_changed: int


# --- Scores ---


class ScoreResponse(BaseModel):
    target: str
    target_id: int
    response_id: int
    score: float


class ScoreTreeNode(BaseModel):
    variable_id: int
    name: str
    path: str
    aggregation_type: str
    weightage: float
    score: float
    children: List["ScoreTreeNode"] = []


# --- Surveys ---


class SurveySelectionIn(BaseModel):
    question_ids: List[int] = Field(default_factory=list)
    variable_ids: List[int] = Field(default_factory=list)
    lever_ids: List[int] = Field(default_factory=list)
    pillar_ids: List[int] = Field(default_factory=list)


class SurveyBase(BaseModel):
    title: str = Field(..., min_length=1)
    description: Optional[str] = None
    category: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    allow_anonymous: bool = False
    max_responses: Optional[int] = Field(default=None, ge=1)

    @model_validator(mode="after")
    def check_dates(self):
        if self.start_date and self.end_date and self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self


class SurveyCreate(SurveyBase):
    selection: SurveySelectionIn = Field(default_factory=SurveySelectionIn)


class SurveyUpdate(SurveyBase):
    # None keeps the frozen question set, a selection re-freezes it
    selection: Optional[SurveySelectionIn] = None


class SurveyQuestionResponse(BaseModel):
    id: int
    variable_question_id: Optional[int] = None
    text: str
    type: str
    options: Optional[List[Dict[str, Any]]] = None
    required: bool
    weight: float
    order: int
    group_id: Optional[str] = None
    is_group_lead: bool = False
    requires_evidence: bool = False
    evidence_description: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class SurveyResponse(SurveyBase):
    id: int
    is_published: bool
    is_active: bool
    selection: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    questions: List[SurveyQuestionResponse] = []

    model_config = ConfigDict(from_attributes=True)


class SurveyListItem(BaseModel):
    id: int
    title: str
    description: Optional[str] = None
    category: Optional[str] = None
    is_published: bool
    is_active: bool
    question_count: int
    response_count: int
    completed_response_count: int
    updated_at: Optional[datetime] = None


class SelectionPreview(BaseModel):
    kind: str
    question_ids: List[int]
    count: int


class PublishRequest(BaseModel):
    is_published: bool


# --- Responses ---


AnswerValue = Union[str, List[str], int, float, bool, None]


class ResponseSubmit(BaseModel):
    respondent_id: Optional[str] = None
    answers: Dict[int, AnswerValue] = Field(default_factory=dict)
    evidences: Dict[int, str] = Field(default_factory=dict)
    is_draft: bool = False

    @field_validator("respondent_id")
    @classmethod
    def strip_respondent(cls, v):
        if v is None:
            return v
        v = v.strip()
        return v or None


class AnswerResponse(BaseModel):
    id: int
    survey_question_id: int
    value: Optional[Any] = None
    evidence: Optional[str] = None
    score: Optional[float] = None

    model_config = ConfigDict(from_attributes=True)


class ResponseDetail(BaseModel):
    id: int
    survey_id: int
    respondent_id: Optional[str] = None
    score: Optional[float] = None
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    answers: List[AnswerResponse] = []

    model_config = ConfigDict(from_attributes=True)


class ResponseStatus(BaseModel):
    has_response: bool
    is_completed: bool = False
    answers: Dict[int, Any] = {}
    evidences: Dict[int, str] = {}
    score: Optional[float] = None
    completed_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
