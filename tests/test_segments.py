"""
Tests for segment resolution and saved segments.
"""
from datetime import date

import pytest

from app.models import models
from app.models.models import Gender
from app.schemas.schemas import SegmentCriteria
from app.services.segment_service import SegmentCriteriaError, SegmentService, years_before

from conftest import NOW, TENANT_ID


def criteria(**data):
    return SegmentCriteria.model_validate(data)


@pytest.fixture
def service(db, tenant):
    return SegmentService(db, TENANT_ID)


class TestResolve:
    """Resolving criteria into customer ids."""

    def test_frequency_minimum(self, service, make_customer):
        """Only customers with at least ten visits match."""
        make_customer("A", visit_count=3)
        b = make_customer("B", visit_count=12)
        c = make_customer("C", visit_count=25)
        result = service.resolve(criteria(rfm={"frequency": {"min": 10}}), NOW)
        assert result.value == frozenset({b.id, c.id})
        assert result.ok

    def test_resolution_is_repeatable(self, service, make_customer):
        make_customer("A", visit_count=3)
        make_customer("B", visit_count=12)
        wanted = criteria(rfm={"frequency": {"min": 10}})
        assert service.resolve(wanted, NOW).value == service.resolve(wanted, NOW).value

    def test_empty_criteria_match_nobody(self, service, make_customer):
        make_customer("A", visit_count=3)
        result = service.resolve(criteria(), NOW)
        assert result.value == frozenset()
        assert not result.ok

    def test_empty_nested_filters_count_as_empty(self, service, make_customer):
        make_customer("A", visit_count=3)
        result = service.resolve(criteria(rfm={"frequency": {}}, demographics={"locations": []}), NOW)
        assert result.value == frozenset()

    def test_recency_range(self, service, make_customer):
        recent = make_customer("Recent", visits=[(10, 5000, "カット")])
        make_customer("Lapsed", visits=[(100, 5000, "カット")])
        result = service.resolve(criteria(rfm={"recency": {"max": 30}}), NOW)
        assert result.value == frozenset({recent.id})

    def test_monetary_range(self, service, make_customer):
        make_customer("Low", visits=[(10, 3000, "カット")])
        high = make_customer("High", visits=[(10, 30000, "カラー"), (40, 30000, "カラー")])
        result = service.resolve(criteria(rfm={"monetary": {"min": 50000}}), NOW)
        assert result.value == frozenset({high.id})

    def test_tags_require_every_tag(self, service, make_customer):
        both = make_customer("Both", tags=["VIP", "カラー"])
        make_customer("VIP only", tags=["VIP"])
        result = service.resolve(criteria(tags=["VIP", "カラー"]), NOW)
        assert result.value == frozenset({both.id})

    def test_unknown_tag_is_a_warning(self, service, make_customer):
        make_customer("VIP", tags=["VIP"])
        result = service.resolve(criteria(tags=["Nonexistent"]), NOW)
        assert result.value == frozenset()
        assert any("Nonexistent" in w for w in result.warnings)

    def test_age_range(self, service, make_customer, birthday):
        young = make_customer("Young", birth_date=birthday(25))
        make_customer("Older", birth_date=birthday(55))
        make_customer("Teen", birth_date=birthday(15))
        result = service.resolve(criteria(demographics={"age_range": {"min": 20, "max": 30}}), NOW)
        assert result.value == frozenset({young.id})

    def test_gender_and_location(self, service, make_customer):
        match = make_customer("Match", gender=Gender.FEMALE, address="東京都渋谷区")
        make_customer("Osaka", gender=Gender.FEMALE, address="大阪府大阪市")
        make_customer("Male", gender=Gender.MALE, address="東京都新宿区")
        result = service.resolve(criteria(demographics={"gender": "FEMALE", "locations": ["東京都"]}), NOW)
        assert result.value == frozenset({match.id})

    def test_risk_level(self, service, make_customer):
        make_customer("Active", visits=[(10, 5000, "カット")])
        lapsed = make_customer("Lapsed", visits=[(120, 5000, "カット")])
        result = service.resolve(criteria(behavioral={"risk_level": "HIGH"}), NOW)
        assert result.value == frozenset({lapsed.id})

    def test_visit_interval(self, service, make_customer):
        regular = make_customer("Regular", visits=[(10, 5000, "カット"), (40, 5000, "カット"), (70, 5000, "カット")])
        make_customer("Rare", visits=[(10, 5000, "カット"), (200, 5000, "カット")])
        make_customer("Once", visits=[(10, 5000, "カット")])
        result = service.resolve(criteria(behavioral={"visit_interval": {"max": 45}}), NOW)
        assert result.value == frozenset({regular.id})

    def test_preferred_menus(self, service, make_customer):
        colour = make_customer("Colour", visits=[(10, 8000, "カラー")])
        make_customer("Cut", visits=[(10, 5000, "カット")])
        result = service.resolve(criteria(behavioral={"preferred_menus": ["カラー"]}), NOW)
        assert result.value == frozenset({colour.id})

    def test_rfm_segment_membership(self, service, make_customer):
        champion = make_customer("Champion", visits=[(5 + i, 5000, "カット") for i in range(22)])
        make_customer("Hibernating", visits=[(250, 3000, "カット")])
        result = service.resolve(criteria(rfm_segments=["Champions"]), NOW)
        assert result.value == frozenset({champion.id})

    def test_other_tenants_are_invisible(self, db, service, make_customer):
        db.add(models.Tenant(id="other", name="Other"))
        db.add(models.Customer(tenant_id="other", name="Stranger", visit_count=50))
        db.commit()
        mine = make_customer("Mine", visit_count=50)
        result = service.resolve(criteria(rfm={"frequency": {"min": 10}}), NOW)
        assert result.value == frozenset({mine.id})


class TestResolveMany:
    """Union of several criteria."""

    def test_union_counts_each_customer_once(self, service, make_customer):
        vip = make_customer("VIP frequent", visit_count=15, tags=["VIP"])
        frequent = make_customer("Frequent", visit_count=15)
        tagged = make_customer("VIP", visit_count=1, tags=["VIP"])
        make_customer("Neither", visit_count=1)
        result = service.resolve_many([
            criteria(rfm={"frequency": {"min": 10}}),
            criteria(tags=["VIP"]),
        ], NOW)
        assert result.value == frozenset({vip.id, frequent.id, tagged.id})


class TestSavedSegments:
    """Persisting segments."""

    def test_create_segment(self, db, service, make_customer):
        make_customer("A", visit_count=12)
        result = service.create_segment("常連", criteria(rfm={"frequency": {"min": 10}}), "Regulars")
        assert result.matched_count == 1
        assert result.warnings == []
        segment = db.query(models.CustomerSegment).filter(models.CustomerSegment.id == result.id).one()
        assert segment.customer_count == 1
        audit = db.query(models.ActivityLog).filter(models.ActivityLog.entity_id == result.id).one()
        assert audit.action == "SEGMENT_CREATED"

    def test_duplicate_name_is_a_warning(self, service, make_customer):
        make_customer("A", visit_count=12)
        service.create_segment("常連", criteria(rfm={"frequency": {"min": 10}}))
        second = service.create_segment("常連", criteria(rfm={"frequency": {"min": 20}}))
        assert second.matched_count == 0
        assert any("already exists" in w for w in second.warnings)

    def test_empty_segment_is_rejected(self, service):
        with pytest.raises(SegmentCriteriaError):
            service.create_segment("Everyone", criteria())

    def test_saved_criteria_round_trip(self, service, make_customer):
        wanted = criteria(rfm={"frequency": {"min": 10}}, tags=["VIP"])
        result = service.create_segment("VIP regulars", wanted)
        assert service.get_segment_criteria([result.id]) == [wanted]

    def test_unknown_segment_id(self, service):
        with pytest.raises(LookupError):
            service.get_segment_criteria(["missing"])


def test_years_before_leap_day():
    assert years_before(date(2028, 2, 29), 1) == date(2027, 2, 28)
    assert years_before(date(2026, 4, 15), 30) == date(1996, 4, 15)
