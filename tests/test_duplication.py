# tests/test_duplication.py
import pytest

from exception_rules.data.models import ExceptionRule
from exception_rules.domain.duplication import RuleDuplicationDetector, name_similarity


@pytest.fixture
def detector():
    """Create a detector with the default thresholds"""
    return RuleDuplicationDetector(similarity_threshold=0.6, strong_similarity_threshold=0.9)


@pytest.fixture
def rules():
    """Create an existing rule set"""
    return [
        ExceptionRule(id="toilet", name="  上厕所\t"),
        ExceptionRule(id="water", name="喝水"),
        ExceptionRule(id="meeting", name="开会"),
    ]


def test_exact_match_ignores_whitespace(detector, rules):
    """Test that surrounding whitespace does not hide an exact match"""
    report = detector.detect_duplicates("上厕所", rules)

    assert report.has_exact_match
    assert [r.id for r in report.exact_matches] == ["toilet"]
    assert report.suggestion.id == "toilet"


def test_unknown_name_has_no_exact_match(detector, rules):
    """Test a name that matches nothing"""
    report = detector.detect_duplicates("不存在的规则", rules)

    assert not report.has_exact_match
    assert report.exact_matches == []


def test_similar_names_are_advisory(detector, rules):
    """Test that near-duplicates are reported as similar matches"""
    report = detector.detect_duplicates("去厕所", rules)

    assert not report.has_exact_match
    assert report.has_similar_matches
    assert report.similar_matches[0].rule.id == "toilet"
    assert 0.6 <= report.similar_matches[0].similarity < 1.0
    assert report.suggestion is None


def test_inactive_rules_are_not_duplicates(detector):
    """Test that soft-deleted rules are ignored"""
    rules = [ExceptionRule(id="gone", name="喝水", is_active=False)]

    report = detector.detect_duplicates("喝水", rules)

    assert not report.has_exact_match
    assert not report.has_similar_matches


def test_excluded_rule_is_ignored(detector, rules):
    """Test that the rule being renamed does not collide with itself"""
    report = detector.detect_duplicates("喝水", rules, exclude_id="water")

    assert not report.has_exact_match


@pytest.mark.parametrize("name", [None, 123, "", "   "])
def test_malformed_names_never_raise(detector, rules, name):
    """Test detection over malformed candidate and rule names"""
    broken = rules + [ExceptionRule(id="bad", name=name)]

    detector.detect_duplicates(name, broken)
    report = detector.detect_duplicates("喝水", broken)

    assert report.has_exact_match


def test_blank_candidate_matches_nothing(detector):
    """Test that a blank name never matches blank rule names"""
    report = detector.detect_duplicates("  ", [ExceptionRule(name="")])

    assert not report.has_exact_match
    assert not report.has_similar_matches


def test_name_similarity():
    """Test the similarity ratio of rule names"""
    assert name_similarity("上厕所", " 上厕所 ") == 1.0
    assert name_similarity("上厕所", "去厕所") == pytest.approx(2 / 3)
    assert name_similarity("", "上厕所") == 0.0
    assert name_similarity(None, None) == 0.0


def test_generate_name_suggestions(detector):
    """Test numeric then descriptive alternate names"""
    suggestions = detector.generate_name_suggestions("喝水", ["喝水", "喝水 2"], limit=5)

    assert suggestions == ["喝水 3", "喝水 4", "喝水 5", "喝水 6", "喝水 7"]


def test_generate_name_suggestions_falls_back_to_descriptive(detector):
    """Test descriptive suffixes once numeric suffixes are taken"""
    existing = ["开会"] + [f"开会 {i}" for i in range(2, 11)]

    suggestions = detector.generate_name_suggestions("开会", existing, limit=2)

    assert suggestions == ["开会(紧急)", "开会(短暂)"]


def test_explicit_thresholds_are_kept():
    """Test that explicit thresholds are not replaced by configured defaults"""
    detector = RuleDuplicationDetector(similarity_threshold=0.0, strong_similarity_threshold=1.0)

    report = detector.detect_duplicates("开会", [ExceptionRule(id="toilet", name="上厕所")])

    assert detector.similarity_threshold == 0.0
    assert [m.rule.id for m in report.similar_matches] == ["toilet"]
