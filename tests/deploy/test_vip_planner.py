import ipaddress

import pytest

from snolab.deploy.models import VipAssignment, VipPlan
from snolab.deploy.planner import (
    compute_plan,
    confirm_plan,
    default_base,
    is_dotted_quad,
    render_plan_table,
)
from snolab.errors import VipPlanError

HOST = "10.8.125.20"


def name_for(i):
    return f"sno-{i:02d}"


def test_dotted_quad_validation():
    assert is_dotted_quad("10.8.125.21")
    assert is_dotted_quad("255.255.255.255")
    assert not is_dotted_quad("10.8.125.256")
    assert not is_dotted_quad("10.8.125")
    assert not is_dotted_quad("10.8.125.x")
    assert not is_dotted_quad("")
    assert not is_dotted_quad("010.8.125.21")
    assert not is_dotted_quad("10.8.125.021")


def test_base_defaults_to_host_plus_one():
    assert default_base(HOST) == "10.8.125.21"


def test_three_instances_follow_the_host():
    plan = compute_plan(HOST, 3, name_for=name_for)
    assert [(a.name, a.vip) for a in plan] == [
        ("sno-01", "10.8.125.21"),
        ("sno-02", "10.8.125.22"),
        ("sno-03", "10.8.125.23"),
    ]
    assert not any(a.overridden for a in plan)


@pytest.mark.parametrize("count", [1, 5, 20])
def test_vip_is_base_plus_offset_and_distinct(count):
    base = "10.8.125.100"
    plan = compute_plan(HOST, count, name_for=name_for, vip_base=base)
    for a in plan:
        assert ipaddress.IPv4Address(a.vip) == ipaddress.IPv4Address(base) + (a.ordinal - 1)
    assert len({a.vip for a in plan}) == count
    plan.validate(HOST, require_same_segment=True)


def test_override_for_second_instance_only():
    plan = compute_plan(HOST, 3, name_for=name_for, overrides={"sno-02": "10.8.125.50"})
    assert plan.as_dict() == {
        "sno-01": "10.8.125.21",
        "sno-02": "10.8.125.50",
        "sno-03": "10.8.125.23",
    }
    assert [a.name for a in plan if a.overridden] == ["sno-02"]

    table = render_plan_table(plan)
    rows = [ln for ln in table.splitlines() if "sno-" in ln]
    assert "10.8.125.21" in rows[0] and "auto" in rows[0]
    assert "10.8.125.50" in rows[1] and "override" in rows[1]
    assert "10.8.125.23" in rows[2] and "auto" in rows[2]


def test_declined_plan_prompts_per_instance_and_reprompts_invalid():
    plan = compute_plan(HOST, 3, name_for=name_for)
    answers = iter(["10.8.125.21", "10.8.125.300", "10.8.125.50", "10.8.125.23"])
    asked = []
    shown = []

    def prompt(text, default):
        asked.append((text, default))
        return next(answers)

    final = confirm_plan(plan, confirm=lambda text: False, prompt=prompt, echo=shown.append)

    assert final.as_dict()["sno-02"] == "10.8.125.50"
    assert [a.name for a in final if a.overridden] == ["sno-02"]
    # algorithmic value is the offered default; sno-02 asked twice
    assert asked[1] == ("VIP for sno-02", "10.8.125.22")
    assert len(asked) == 4
    assert any("not a valid IPv4 address" in s for s in shown)
    # the final table is shown again
    assert "10.8.125.50" in shown[-1]


def test_accepted_plan_is_returned_unchanged():
    plan = compute_plan(HOST, 2, name_for=name_for)
    assert confirm_plan(plan, confirm=lambda t: True, prompt=None, echo=lambda s: None) is plan


def test_validate_rejects_duplicates_and_foreign_segment():
    dup = VipPlan([VipAssignment(1, "sno-01", "10.8.125.21"), VipAssignment(2, "sno-02", "10.8.125.21")])
    with pytest.raises(VipPlanError):
        dup.validate(HOST)

    foreign = VipPlan([VipAssignment(1, "sno-01", "10.9.0.5")])
    foreign.validate(HOST)
    with pytest.raises(VipPlanError):
        foreign.validate(HOST, require_same_segment=True)


def test_invalid_inputs():
    with pytest.raises(VipPlanError):
        compute_plan(HOST, 0, name_for=name_for)
    with pytest.raises(VipPlanError):
        compute_plan(HOST, 1, name_for=name_for, overrides={"sno-01": "10.8.125.999"})
    with pytest.raises(VipPlanError):
        compute_plan("255.255.255.255", 1, name_for=name_for)


def test_leading_zero_answer_is_reprompted():
    plan = compute_plan(HOST, 1, name_for=name_for)
    answers = iter(["010.8.125.21", "10.8.125.40"])
    shown = []

    final = confirm_plan(plan, confirm=lambda t: False, prompt=lambda t, d: next(answers), echo=shown.append)

    assert final.as_dict() == {"sno-01": "10.8.125.40"}
    assert any("010.8.125.21" in s for s in shown)
    final.validate(HOST)


def test_declined_plan_offers_computed_vip_over_configured_override():
    plan = compute_plan(HOST, 2, name_for=name_for, overrides={"sno-02": "10.8.125.60"})
    offered = []

    def prompt(text, default):
        offered.append(default)
        return default

    final = confirm_plan(plan, confirm=lambda t: False, prompt=prompt, echo=lambda s: None)

    assert offered == ["10.8.125.21", "10.8.125.22"]
    assert final.as_dict() == {"sno-01": "10.8.125.21", "sno-02": "10.8.125.22"}
    assert not any(a.overridden for a in final)
