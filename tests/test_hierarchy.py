import asyncio

import pytest
from sqlalchemy import func, select

from esg_builder.core import hierarchy
from esg_builder.core.assembler import SurveySelection, resolve_selection
from esg_builder.core.paths import find_inconsistent
from esg_builder.core.traversal import load_subtree
from esg_builder.errors import (
    CircularReference,
    ConcurrentModification,
    DestructiveOperationPending,
    InactiveAncestor,
    InvalidOwnership,
    NotFound,
    TreeDepthExceeded,
    ValidationFailed,
)
from esg_builder.models import Answer, Lever, Pillar, SurveyQuestion, Variable, VariableQuestion


@pytest.fixture
async def chain(make_variable, lever):
    a = await make_variable("A", lever=lever)
    b = await make_variable("B", parent=a)
    c = await make_variable("C", parent=b)
    d = await make_variable("D", parent=c)
    return a, b, c, d


async def test_create_requires_exactly_one_owner(session, make_variable, lever):
    with pytest.raises(InvalidOwnership):
        await hierarchy.create_variable(session, "Orphan")
    root = await make_variable("Root", lever=lever)
    with pytest.raises(InvalidOwnership):
        await hierarchy.create_variable(session, "Both", parent_id=root.id, lever_id=lever.id)


async def test_create_under_missing_parent(session):
    with pytest.raises(NotFound):
        await hierarchy.create_variable(session, "Lost", parent_id=999)


async def test_can_move_on_chain(session, chain):
    a, b, c, d = chain
    assert await hierarchy.can_move_variable(session, a.id, d.id) is False
    assert await hierarchy.can_move_variable(session, a.id, a.id) is False
    assert await hierarchy.can_move_variable(session, d.id, a.id) is True


async def test_move_into_own_descendant_is_rejected(session, chain):
    a, b, c, d = chain
    with pytest.raises(CircularReference):
        await hierarchy.move_variable(session, a.id, new_parent_id=d.id)
    assert a.parent_id is None and a.lever_id is not None


async def test_move_leaf_up_the_chain(session, chain):
    a, b, c, d = chain
    await hierarchy.move_variable(session, d.id, new_parent_id=a.id)
    assert d.parent_id == a.id and d.lever_id is None
    assert (d.level, d.path) == (1, "A/D")


async def test_move_across_levers(session, make_variable, pillar, lever):
    other = Lever(pillar_id=pillar.id, name="Waste")
    session.add(other)
    await session.commit()
    target = await make_variable("Landfill", lever=other)
    energy = await make_variable("Energy", lever=lever)
    usage = await make_variable("Usage", parent=energy)

    await hierarchy.move_variable(session, usage.id, new_parent_id=target.id)

    assert usage.path == "Landfill/Usage"
    stats = await hierarchy.get_variable_stats(session, target.id)
    assert stats["direct_children"] == 1


async def _in_own_session(session_factory, operation, *args, **kwargs):
    async with session_factory() as own:
        return await operation(own, *args, **kwargs)


async def test_move_and_parent_rename_run_concurrently(
    session_factory, make_variable, lever
):
    parent = await make_variable("Parent", lever=lever)
    mover = await make_variable("Mover", lever=lever)

    results = await asyncio.gather(
        _in_own_session(session_factory, hierarchy.move_variable, mover.id, new_parent_id=parent.id),
        _in_own_session(session_factory, hierarchy.update_variable, parent.id, {"name": "Renamed"}),
        return_exceptions=True,
    )

    assert not [r for r in results if isinstance(r, Exception)]
    async with session_factory() as fresh:
        moved = await fresh.get(Variable, mover.id)
        assert (moved.path, moved.level) == ("Renamed/Mover", 1)
        assert await find_inconsistent(fresh, lever.id) == []


async def test_crossing_moves_cannot_form_a_cycle(session_factory, make_variable, lever):
    a = await make_variable("A", lever=lever)
    b = await make_variable("B", lever=lever)

    results = await asyncio.gather(
        _in_own_session(session_factory, hierarchy.move_variable, a.id, new_parent_id=b.id),
        _in_own_session(session_factory, hierarchy.move_variable, b.id, new_parent_id=a.id),
        return_exceptions=True,
    )

    failures = [r for r in results if isinstance(r, Exception)]
    assert len(failures) == 1
    assert isinstance(failures[0], CircularReference)
    async with session_factory() as fresh:
        tree = await hierarchy.get_lever_tree(fresh, lever.id)
        assert len(tree) == 1
        assert len(tree[0]["children"]) == 1
        assert await find_inconsistent(fresh, lever.id) == []


async def test_clone_two_level_subtree(session, make_variable, make_question, lever):
    root = await make_variable("Energy", lever=lever, aggregation_type="AVERAGE")
    child = await make_variable("Usage", parent=root, weightage=2.0)
    q_root = await make_question(root, "Has an energy policy?")
    q_child = await make_question(child, "Metered sites?", weightage=3.0)
    target = await make_variable("Target", lever=lever)

    clone = await hierarchy.clone_variable_tree(session, root.id, target_parent_id=target.id)

    tree = await load_subtree(session, clone)
    assert len(tree) == 2
    cloned_child = tree.nodes[tree.children[clone.id][0]]
    assert {clone.id, cloned_child.id}.isdisjoint({root.id, child.id})
    assert clone.name == "Energy (Copy)"
    assert cloned_child.name == "Usage"
    assert (clone.level, clone.path) == (1, "Target/Energy (Copy)")
    assert (cloned_child.level, cloned_child.path) == (2, "Target/Energy (Copy)/Usage")
    assert clone.aggregation_type == "AVERAGE"
    assert cloned_child.weightage == 2.0

    result = await session.execute(
        select(VariableQuestion).where(VariableQuestion.variable_id.in_([clone.id, cloned_child.id]))
    )
    copies = result.scalars().all()
    assert len(copies) == 2
    assert {q.id for q in copies}.isdisjoint({q_root.id, q_child.id})
    assert sorted(q.text for q in copies) == ["Has an energy policy?", "Metered sites?"]
    total = await session.scalar(select(func.count(Variable.id)))
    assert total == 5


async def test_clone_under_own_descendant_copies_snapshot(session, make_variable, lever):
    root = await make_variable("Energy", lever=lever)
    child = await make_variable("Usage", parent=root)

    clone = await hierarchy.clone_variable_tree(session, root.id, target_parent_id=child.id)

    tree = await load_subtree(session, clone)
    assert len(tree) == 2
    assert clone.path == "Energy/Usage/Energy (Copy)"


async def test_delete_empty_leaf_is_immediate(session, make_variable, lever):
    root = await make_variable("Energy", lever=lever)
    outcome = await hierarchy.delete_variable(session, root.id)
    assert outcome.kind == "hard_delete"
    assert await session.get(Variable, root.id) is None


async def test_delete_preview_then_force(
    session, make_variable, make_question, record_answers, lever
):
    parent = await make_variable("Energy", lever=lever)
    doomed = await make_variable("Usage", parent=parent)
    kept_a = await make_variable("Metering", parent=doomed)
    kept_b = await make_variable("Audits", parent=doomed)
    question = await make_question(doomed, "Do you track usage?", type="text")
    await make_question(kept_a, "Smart meters?")
    response = await record_answers([(question, 0.0)])

    with pytest.raises(DestructiveOperationPending) as exc_info:
        await hierarchy.delete_variable(session, doomed.id)

    preview = exc_info.value.preview
    assert preview["questions_to_delete"] == [
        {"id": question.id, "text": "Do you track usage?", "type": "text", "required": True}
    ]
    assert [(c["name"], c["question_count"]) for c in preview["children_to_reassign"]] == [
        ("Audits", 0),
        ("Metering", 1),
    ]
    assert preview["affected_response_count"] == 1
    assert preview["reassign_to"] == {"parent_id": parent.id, "lever_id": None}
    # deactivated with its whole subtree, nothing removed yet
    assert (doomed.is_active, kept_a.is_active, kept_b.is_active) == (False, False, False)
    assert parent.is_active is True
    assert await resolve_selection(session, SurveySelection(lever_ids=[lever.id])) == []
    assert await session.get(VariableQuestion, question.id) is not None
    assert kept_a.parent_id == doomed.id

    outcome = await hierarchy.delete_variable(session, doomed.id, force=True)

    assert outcome.deleted_questions == 1
    assert outcome.deleted_answers == 1
    assert outcome.affected_responses == 1
    assert sorted(outcome.children_reassigned) == sorted([kept_a.id, kept_b.id])
    assert await session.get(Variable, doomed.id) is None
    assert kept_a.parent_id == parent.id and kept_b.parent_id == parent.id
    assert kept_a.path == "Energy/Metering" and kept_a.level == 1
    assert kept_a.is_active is False
    assert await session.scalar(
        select(func.count(Answer.id)).where(Answer.response_id == response.id)
    ) == 0
    # the frozen survey copy survives without its source
    frozen = (await session.execute(select(SurveyQuestion))).scalars().one()
    assert frozen.variable_question_id is None
    assert frozen.text == "Do you track usage?"


async def test_force_delete_root_promotes_children_to_lever(session, make_variable, lever):
    root = await make_variable("Energy", lever=lever)
    child = await make_variable("Usage", parent=root)
    grandchild = await make_variable("Metering", parent=child)

    await hierarchy.delete_variable(session, root.id, force=True)

    assert child.parent_id is None and child.lever_id == lever.id
    assert (child.level, child.path) == (0, "Usage")
    assert (grandchild.level, grandchild.path) == (1, "Usage/Metering")


async def test_deactivation_cascades_and_activation_checks_chain(session, chain):
    a, b, c, d = chain
    await hierarchy.set_variable_active(session, b.id, False)
    assert [v.is_active for v in (a, b, c, d)] == [True, False, False, False]

    with pytest.raises(InactiveAncestor):
        await hierarchy.set_variable_active(session, c.id, True)

    await hierarchy.set_variable_active(session, b.id, True)
    await hierarchy.set_variable_active(session, c.id, True)
    assert (b.is_active, c.is_active, d.is_active) == (True, True, False)


async def test_activation_blocked_by_inactive_lever_or_pillar(
    session, make_variable, lever, pillar
):
    root = await make_variable("Energy", lever=lever)
    await hierarchy.set_variable_active(session, root.id, False)

    lever.is_active = False
    await session.commit()
    with pytest.raises(InactiveAncestor, match="lever"):
        await hierarchy.set_variable_active(session, root.id, True)

    lever.is_active = True
    pillar.is_active = False
    await session.commit()
    with pytest.raises(InactiveAncestor, match="pillar"):
        await hierarchy.set_variable_active(session, root.id, True)


async def test_update_checks_expected_version_and_fields(session, make_variable, lever):
    root = await make_variable("Energy", lever=lever)
    version = root.version
    await hierarchy.update_variable(session, root.id, {"weightage": 2.5}, expected_version=version)
    assert root.version == version + 1

    with pytest.raises(ConcurrentModification):
        await hierarchy.update_variable(session, root.id, {"weightage": 3.0}, expected_version=version)
    with pytest.raises(ValidationFailed):
        await hierarchy.update_variable(session, root.id, {"parent_id": 5})


async def test_deep_tree_hits_depth_cap(session, make_variable, lever):
    node = await make_variable("L0", lever=lever)
    root = node
    for depth in range(1, 5):
        node = await make_variable(f"L{depth}", parent=node)

    with pytest.raises(TreeDepthExceeded):
        await load_subtree(session, root, max_depth=3)
    tree = await load_subtree(session, root, max_depth=4)
    assert len(tree) == 5
    assert list(tree.postorder())[-1] == root.id


async def test_lever_tree_and_listing(session, make_variable, make_question, lever, pillar):
    energy = await make_variable("Energy", lever=lever)
    usage = await make_variable("Usage", parent=energy)
    metering = await make_variable("Metering", parent=usage)
    await make_question(metering, "Smart meters?")
    retired = await make_variable("Retired", parent=energy)
    await hierarchy.set_variable_active(session, retired.id, False)

    tree = await hierarchy.get_lever_tree(session, lever.id)
    assert [n["name"] for n in tree] == ["Energy"]
    assert [n["name"] for n in tree[0]["children"]] == ["Usage"]
    deepest = tree[0]["children"][0]["children"][0]
    assert deepest["path"] == "Energy/Usage/Metering"
    assert [q.text for q in deepest["questions"]] == ["Smart meters?"]

    listing = await hierarchy.list_variables(session, lever_id=lever.id, include_inactive=True)
    assert [item["path"] for item in listing] == [
        "Energy",
        "Energy/Retired",
        "Energy/Usage",
        "Energy/Usage/Metering",
    ]
    assert {item["resolved_lever_id"] for item in listing} == {lever.id}
    assert {item["resolved_pillar_id"] for item in listing} == {pillar.id}

    ancestors = await hierarchy.get_variable_ancestors(session, metering.id)
    assert [a.name for a in ancestors] == ["Energy", "Usage"]


async def test_lever_deactivation_cascades_through_forest(session, make_variable, lever):
    from esg_builder.crud import crud_framework

    energy = await make_variable("Energy", lever=lever)
    usage = await make_variable("Usage", parent=energy)

    await crud_framework.set_lever_active(session, lever.id, False)

    assert lever.is_active is False
    assert energy.is_active is False and usage.is_active is False


async def test_pillar_rules(session, pillar, lever):
    from esg_builder.crud import crud_framework
    from esg_builder.errors import DependentRecordsExist

    with pytest.raises(DependentRecordsExist):
        await crud_framework.delete_pillar(session, pillar.id)

    await crud_framework.set_pillar_active(session, pillar.id, False)
    assert lever.is_active is False
    with pytest.raises(InactiveAncestor):
        await crud_framework.set_lever_active(session, lever.id, True)

    empty = Pillar(name="Governance")
    session.add(empty)
    await session.commit()
    deleted = await crud_framework.delete_pillar(session, empty.id)
    assert deleted.is_active is False
