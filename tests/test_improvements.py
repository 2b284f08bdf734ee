"""
Tests for the shared infrastructure: validation, error handling, logging,
configuration and transaction handling.
"""

import json
import logging
import os
import tempfile

import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import IntegrityError as SQLIntegrityError
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

from quality_review.domain.models import EvaluatorRole
from quality_review.domain.schemas import (
    DimensionCreateInput,
    ReorderInput,
    RolesInput,
    require_valid,
    validate_input,
)
from quality_review.infrastructure.config import (
    DatabaseConfig,
    ReviewConfig,
    get_settings,
    override_settings,
)
from quality_review.infrastructure.db import create_database_engine
from quality_review.infrastructure.exceptions import (
    ConflictError,
    ConnectionError,
    CycleNotFoundError,
    DatabaseError,
    QualityReviewError,
    ValidationError,
    create_user_friendly_error_message,
    handle_database_error,
    log_error_details,
)
from quality_review.infrastructure.logging import (
    LogContext,
    StructuredFormatter,
    clear_context,
    context_filter,
    get_logger,
    log_operation,
    set_context,
    setup_logging,
)
from quality_review.infrastructure.models import Base, BoardORM
from quality_review.infrastructure.uow import UnitOfWork


class TestPydanticValidation:
    """Input validation through pydantic models."""

    def test_dimension_creation_validation_success(self):
        result = validate_input(
            DimensionCreateInput,
            {"name": "Readability", "description": "Is the code easy to follow?", "audience": "lead"},
        )

        assert result.success is True
        assert result.data is not None
        assert result.data["name"] == "Readability"
        assert result.data["audience"] == "LEAD"

    def test_dimension_creation_validation_failure(self):
        result = validate_input(DimensionCreateInput, {"name": ""})

        assert result.success is False
        assert any("name" in error.field for error in result.errors)

    def test_input_sanitization(self):
        result = validate_input(
            DimensionCreateInput,
            {
                "name": "  <b>Polish</b>  ",
                "description": "<script>alert('xss')</script>Finish\x00 quality",
            },
        )

        assert result.success is True
        data = result.data
        assert data["name"] == "Polish"
        assert "script" not in data["description"]
        assert "\x00" not in data["description"]

    def test_reorder_rejects_duplicates_and_non_positive_ids(self):
        assert not validate_input(ReorderInput, {"dimension_ids": [1, 1]}).success
        assert not validate_input(ReorderInput, {"dimension_ids": [0, 2]}).success
        assert not validate_input(ReorderInput, {"dimension_ids": []}).success
        assert validate_input(ReorderInput, {"dimension_ids": [2, 1]}).success

    def test_require_valid_raises_first_error(self):
        with pytest.raises(ValidationError) as excinfo:
            require_valid(RolesInput, {"roles": ["LEAD", "JANITOR"]})
        assert excinfo.value.field == "roles.1"
        assert excinfo.value.details["errors"]

    def test_require_valid_returns_model(self):
        validated = require_valid(RolesInput, {"roles": ["lead", " po "]})
        assert validated.roles == [EvaluatorRole.LEAD, EvaluatorRole.PO]


class TestErrorHandling:
    """Error kinds, status codes and user-facing messages."""

    def test_validation_error_creation(self):
        error = ValidationError("test_field", "Test error message", "invalid_value")

        assert error.field == "test_field"
        assert "Test error message" in str(error)
        assert error.user_message == "Test error message"
        assert error.to_payload() == {
            "kind": "validation",
            "message": "Test error message",
            "details": {"field": "test_field", "value": "invalid_value"},
        }
        assert error.status_code == 400

    def test_not_found_payload(self):
        error = CycleNotFoundError(42)
        assert error.status_code == 404
        assert error.to_payload()["message"] == "Review cycle not found"
        assert error.details == {"resource": "Review cycle", "id": 42}

    def test_unique_violation_becomes_conflict(self):
        original_error = SQLIntegrityError("statement", {}, Exception("UNIQUE constraint failed"))
        db_error = handle_database_error(original_error, "create evaluation")

        assert isinstance(db_error, ConflictError)
        assert db_error.status_code == 409

    def test_connection_failures_are_classified(self):
        original_error = OperationalError("statement", {}, Exception("connection refused"))
        assert isinstance(handle_database_error(original_error), ConnectionError)

    def test_other_database_errors(self):
        db_error = handle_database_error(Exception("syntax error near FROM"), "list cycles")
        assert isinstance(db_error, DatabaseError)
        assert db_error.status_code == 500
        assert db_error.kind == "internal"

    def test_user_friendly_error_messages(self):
        assert create_user_friendly_error_message(ValidationError("name", "cannot be empty")) == (
            "cannot be empty"
        )
        assert "try again" in create_user_friendly_error_message(ValueError("boom")).lower()
        assert "contact support" in create_user_friendly_error_message(RuntimeError("x"))

    def test_error_details_for_logging(self):
        details = log_error_details(CycleNotFoundError(7), {"user_id": 3})
        assert details["error_type"] == "CycleNotFoundError"
        assert details["context"] == {"user_id": 3}

    def test_base_error_defaults(self):
        error = QualityReviewError("internal detail")
        assert error.kind == "internal"
        assert error.user_message == "An unexpected error occurred. Please try again."


class TestLogging:
    """Structured logging and request context."""

    def test_logger_namespace(self):
        assert get_logger("test_module").name == "quality_review.test_module"
        assert get_logger("quality_review.web").name == "quality_review.web"

    def test_logging_configuration_writes_file(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            log_file = os.path.join(temp_dir, "test.log")
            setup_logging(level="DEBUG", log_file=log_file, structured=True, enable_console=False)
            try:
                get_logger("test").info("Test message")
                assert os.path.exists(log_file)
            finally:
                setup_logging(level="WARNING", log_file=None, enable_console=False)

    def test_structured_formatter_includes_context(self):
        record = logging.LogRecord("quality_review.test", logging.INFO, __file__, 1, "hello", None, None)
        record.cycle_id = 40
        entry = json.loads(StructuredFormatter().format(record))
        assert entry["message"] == "hello"
        assert entry["level"] == "INFO"
        assert entry["cycle_id"] == 40

    def test_context_is_set_and_cleared(self):
        clear_context()
        set_context(user_id=12, cycle_id=40)
        assert context_filter.context == {"user_id": 12, "cycle_id": 40}
        clear_context()
        assert context_filter.context == {}

    def test_log_context_restores_previous_values(self):
        clear_context()
        set_context(user_id=1)
        with LogContext(operation="inner"):
            assert context_filter.context["operation"] == "inner"
        assert "operation" not in context_filter.context
        clear_context()

    def test_log_operation_reraises(self):
        @log_operation("explode")
        def explode():
            raise ValidationError("field", "bad")

        with pytest.raises(ValidationError):
            explode()


class TestConfiguration:
    """Settings sections and their validation."""

    def test_database_config_sqlite(self):
        config = DatabaseConfig(backend="sqlite", sqlite_path=":memory:")
        assert config.get_connection_url() == "sqlite:///:memory:"

    def test_database_config_mysql(self):
        config = DatabaseConfig(
            backend="mysql",
            mysql_host="localhost",
            mysql_user="test",
            mysql_password="pass",
            mysql_database="testdb",
        )

        url = config.get_connection_url()
        assert url.startswith("mysql+pymysql://")
        assert "test:pass@localhost" in url
        assert url.endswith("/testdb?charset=utf8mb4")

    def test_invalid_backend(self):
        with pytest.raises(ValueError):
            DatabaseConfig(backend="invalid")

    def test_review_defaults(self):
        review = ReviewConfig()
        assert review.divergence_threshold == 2.0
        assert review.score_scale().labels == ["LOW", "MEDIUM", "HIGH", "NOT_APPLICABLE"]
        assert review.tier_table().classify(2.5) == "HIGH"
        assert review.confidence_table().bucket(5) == "AMBER"
        assert review.universal_role_set() == frozenset({EvaluatorRole.HEAD_OF_ART})

    def test_review_tables_from_environment(self, monkeypatch):
        monkeypatch.setenv("REVIEW_SCORE_LEVELS", '{"poor": 1, "good": 4}')
        monkeypatch.setenv("REVIEW_TIER_BREAKPOINTS", '{"GOOD": 3, "POOR": 0}')
        monkeypatch.setenv("REVIEW_EXACT_ROLE_NAMES", '{"Creative Director": "HEAD_OF_ART"}')

        review = ReviewConfig()

        assert review.score_scale().labels == ["POOR", "GOOD"]
        assert review.tier_table().classify(3.2) == "GOOD"
        assert review.role_mapping().resolve(["creative director"]) == frozenset(
            {EvaluatorRole.HEAD_OF_ART}
        )

    def test_score_levels_need_a_numeric_value(self):
        with pytest.raises(ValueError):
            ReviewConfig(score_levels={"N/A": None})

    def test_negative_divergence_threshold_is_rejected(self):
        with pytest.raises(ValueError):
            ReviewConfig(divergence_threshold=-1)

    def test_settings_override(self, monkeypatch):
        monkeypatch.delenv("APP_ENVIRONMENT", raising=False)
        monkeypatch.delenv("REVIEW_DIVERGENCE_THRESHOLD", raising=False)
        try:
            settings = override_settings(
                app_environment="testing", review_divergence_threshold=1.5
            )
            assert settings.is_testing()
            assert settings.review.divergence_threshold == 1.5
            assert settings.get_environment_info()["review"]["divergence_threshold"] == 1.5
        finally:
            os.environ.pop("APP_ENVIRONMENT", None)
            os.environ.pop("REVIEW_DIVERGENCE_THRESHOLD", None)

    def test_settings_are_cached(self):
        assert get_settings() is get_settings()


class TestUnitOfWork:
    """One transaction per ``begin()`` block."""

    @pytest.fixture
    def SessionLocal(self):
        engine = create_database_engine(DatabaseConfig(backend="sqlite", sqlite_path=":memory:"))
        Base.metadata.create_all(engine)
        return sessionmaker(bind=engine, expire_on_commit=False)

    def test_commits_on_success(self, SessionLocal):
        with UnitOfWork(SessionLocal).begin() as s:
            s.add(BoardORM(name="Committed"))

        with SessionLocal() as s:
            assert [board.name for board in s.query(BoardORM).all()] == ["Committed"]

    def test_rolls_back_on_engine_errors(self, SessionLocal):
        with pytest.raises(ValidationError):
            with UnitOfWork(SessionLocal).begin() as s:
                s.add(BoardORM(name="Discarded"))
                s.flush()
                raise ValidationError("name", "bad")

        with SessionLocal() as s:
            assert s.query(BoardORM).count() == 0

    def test_database_errors_are_translated(self, SessionLocal):
        with pytest.raises(DatabaseError):
            with UnitOfWork(SessionLocal).begin("broken") as s:
                s.add(BoardORM(name=None))

    def test_file_engine(self, tmp_path):
        engine = create_engine(f"sqlite:///{tmp_path / 'review.db'}")
        Base.metadata.create_all(engine)
        with UnitOfWork(sessionmaker(bind=engine)).begin() as s:
            s.add(BoardORM(name="On disk"))
        with sessionmaker(bind=engine)() as s:
            assert s.query(BoardORM).one().name == "On disk"
