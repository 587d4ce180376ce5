"""Tests for the centralized exception hierarchy."""

import pytest

from govcore.exceptions import (
    ConcurrentModification,
    GovCoreError,
    JournalError,
    LockTimeout,
    NotFoundError,
    PromotionFailed,
    ReferentialConflict,
    ScopeOverlap,
    StalePreview,
    StalePromotion,
    StaleStateError,
    ValidationError,
)


class TestExceptionHierarchy:
    """Verify the exception class hierarchy is correct."""

    def test_base_exception_exists(self):
        assert issubclass(GovCoreError, Exception)

    @pytest.mark.parametrize(
        "exc_cls",
        [
            ValidationError,
            NotFoundError,
            ScopeOverlap,
            ReferentialConflict,
            StaleStateError,
            PromotionFailed,
            LockTimeout,
            JournalError,
        ],
    )
    def test_subclasses_of_govcore_error(self, exc_cls):
        assert issubclass(exc_cls, GovCoreError)

    @pytest.mark.parametrize("exc_cls", [StalePreview, StalePromotion, ConcurrentModification])
    def test_staleness_subclasses(self, exc_cls):
        assert issubclass(exc_cls, StaleStateError)
        assert exc_cls.__bases__ == (StaleStateError,)

    def test_validation_error_is_value_error(self):
        assert issubclass(ValidationError, ValueError)

    def test_not_found_is_key_error(self):
        assert issubclass(NotFoundError, KeyError)


class TestExceptionMessages:
    def test_not_found_message_is_not_quoted(self):
        assert str(NotFoundError("Environment not found: env_1")) == "Environment not found: env_1"

    def test_scope_overlap_carries_context(self):
        exc = ScopeOverlap("overlap", scope="/subscriptions/s1", conflicting_environment_id="env_1")
        assert exc.scope == "/subscriptions/s1"
        assert exc.conflicting_environment_id == "env_1"

    def test_referential_conflict_lists_references(self):
        exc = ReferentialConflict("in use", referenced_by=["asg_1", "exm_2"])
        assert exc.referenced_by == ["asg_1", "exm_2"]
        assert ReferentialConflict("in use").referenced_by == []

    def test_promotion_failed_carries_request(self):
        exc = PromotionFailed("boom", request_id="prm_1")
        assert exc.request_id == "prm_1"
        assert str(exc) == "boom"

    def test_catch_all_with_base(self):
        with pytest.raises(GovCoreError):
            raise StalePreview("re-preview")
