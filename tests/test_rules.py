from datetime import datetime

import pytest

from funnel_engine.errors import FunnelValidationError
from funnel_engine.rules import (
    Activity,
    EventRule,
    PageRule,
    PropertyFilter,
    compile_funnel,
    matches,
    validate_definition,
)


TS = datetime(2026, 3, 1, 10, 0, 0)


def _page(url, **kw):
    return Activity(identity="u1", timestamp=TS, kind="page_view", url=url, **kw)


def _event(name, **props):
    return Activity(identity="u1", timestamp=TS, kind="event", event_name=name, properties=props)


def _steps():
    return [
        {"order": 1, "kind": "start", "label": "Landing", "rules": [{"type": "page", "operator": "contains", "value": "/landing"}]},
        {"order": 2, "kind": "event", "label": "Signup", "rules": [{"type": "event", "event_name": "signup"}]},
        {"order": 3, "kind": "conversion", "label": "Purchase", "rules": [{"type": "event", "event_name": "purchase"}]},
    ]


def test_valid_definition_has_no_problems():
    assert validate_definition(_steps(), 7) == []


def test_definition_requires_single_leading_start_step():
    steps = _steps()
    steps[0]["kind"] = "page"
    problems = validate_definition(steps, 7)
    assert any("exactly one start step" in p for p in problems)

    steps = _steps()
    steps[0], steps[1] = steps[1], steps[0]
    steps[0]["order"], steps[1]["order"] = 1, 2
    problems = validate_definition(steps, 7)
    assert any("must be the first step" in p for p in problems)


def test_definition_requires_conversion_step():
    steps = _steps()[:2]
    problems = validate_definition(steps, 7)
    assert any("conversion step" in p for p in problems)


def test_definition_rejects_duplicate_orders_and_bad_window():
    steps = _steps()
    steps[2]["order"] = 2
    assert any("duplicate step order" in p for p in validate_definition(steps, 7))
    assert validate_definition(_steps(), 0)
    assert validate_definition(_steps(), 400)


def test_definition_rejects_invalid_regex_and_non_numeric_comparison():
    steps = _steps()
    steps[0]["rules"] = [{"type": "page", "operator": "regex", "value": "(["}]
    assert any("invalid regex" in p for p in validate_definition(steps, 7))

    steps = _steps()
    steps[2]["rules"] = [
        {"type": "event", "event_name": "purchase", "filters": [{"key": "amount", "operator": "gt", "value": "lots"}]}
    ]
    assert any("numeric" in p for p in validate_definition(steps, 7))


def test_exit_rules_only_on_decision_steps():
    steps = _steps()
    steps[1]["exit_rules"] = [{"type": "event", "event_name": "cancel"}]
    assert any("exit_rules" in p for p in validate_definition(steps, 7))
    steps[1]["kind"] = "decision"
    assert validate_definition(steps, 7) == []


def test_compile_funnel_raises_with_all_problems():
    with pytest.raises(FunnelValidationError) as exc_info:
        compile_funnel([], 7)
    assert len(exc_info.value.errors) >= 1


def test_page_rule_operators():
    assert matches(PageRule(type="page", operator="contains", value="/Pricing"), _page("https://x.io/pricing?a=1"))
    assert matches(PageRule(type="page", operator="equals", value="https://x.io/p/*"), _page("https://x.io/p/123"))
    assert not matches(PageRule(type="page", operator="equals", value="https://x.io/p/*"), _page("https://y.io/p/123"))
    assert matches(PageRule(type="page", field="path", operator="regex", value=r"^/docs/\d+$"), _page("u", path="/docs/42"))
    assert not matches(PageRule(type="page", field="title", operator="contains", value="x"), _page("u"))


def test_page_rule_ignores_events():
    rule = PageRule(type="page", operator="contains", value="signup")
    assert not matches(rule, _event("signup"))


def test_event_rule_name_and_filters():
    rule = EventRule(
        type="event",
        event_name="purchase",
        filters=[
            PropertyFilter(key="amount", operator="gt", value=50),
            PropertyFilter(key="plan", operator="equals", value="pro"),
        ],
    )
    assert matches(rule, _event("purchase", amount=99.5, plan="pro"))
    assert matches(rule, _event("purchase", amount="120", plan="pro"))
    assert not matches(rule, _event("purchase", amount=10, plan="pro"))
    assert not matches(rule, _event("purchase", plan="pro"))
    assert not matches(rule, _event("purchase", amount="n/a", plan="pro"))
    assert not matches(rule, _event("refund", amount=99, plan="pro"))


def test_property_contains_on_lists_and_strings():
    tags = PropertyFilter(key="tags", operator="contains", value="vip")
    rule = EventRule(type="event", event_name="login", filters=[tags])
    assert matches(rule, _event("login", tags=["new", "vip"]))
    assert matches(rule, _event("login", tags="VIP customer"))
    assert not matches(rule, _event("login", tags=["new"]))


def test_touches_covers_step_and_exit_rules():
    steps = _steps()
    steps[1]["kind"] = "decision"
    steps[1]["exit_rules"] = [{"type": "event", "event_name": "cancel"}]
    funnel = compile_funnel(steps, 7)
    assert funnel.touches(_event("cancel"))
    assert funnel.touches(_page("https://x.io/landing"))
    assert not funnel.touches(_event("noise"))
    assert funnel.conversion_indices == [2]
