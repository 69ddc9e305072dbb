from datetime import datetime, timedelta, timezone

import pytest

OPTIONS = [
    {"text": "No", "absoluteScore": 0},
    {"text": "Partly", "absoluteScore": 4},
    {"text": "Yes", "absoluteScore": 10},
]


@pytest.fixture
async def catalog(client):
    pillar = (await client.post("/api/pillars", json={"name": "Environmental"})).json()
    lever = (
        await client.post("/api/levers", json={"name": "Emissions", "pillar_id": pillar["id"]})
    ).json()
    return pillar, lever


async def _variable(client, name, **owner):
    response = await client.post("/api/variables", json={"name": name, **owner})
    assert response.status_code == 201, response.text
    return response.json()


async def _question(client, variable_id, text, weightage=1.0, **extra):
    payload = {
        "variable_id": variable_id,
        "text": text,
        "type": "single_select",
        "options": OPTIONS,
        "weightage": weightage,
        **extra,
    }
    response = await client.post("/api/questions", json=payload)
    assert response.status_code == 201, response.text
    return response.json()


async def test_root(client):
    response = await client.get("/")
    assert response.status_code == 200
    assert "version" in response.json()


async def test_catalog_duplicates_and_toggles(client, catalog):
    pillar, lever = catalog
    duplicate = await client.post("/api/pillars", json={"name": "Environmental"})
    assert duplicate.status_code == 409
    assert duplicate.json()["error"] == "DuplicateName"

    same_lever = await client.post(
        "/api/levers", json={"name": "Emissions", "pillar_id": pillar["id"]}
    )
    assert same_lever.status_code == 409

    blocked = await client.delete(f"/api/pillars/{pillar['id']}")
    assert blocked.status_code == 409
    assert blocked.json()["error"] == "DependentRecordsExist"

    off = await client.patch(f"/api/pillars/{pillar['id']}/toggle", json={"is_active": False})
    assert off.json()["is_active"] is False
    lever_on = await client.patch(f"/api/levers/{lever['id']}/toggle", json={"is_active": True})
    assert lever_on.status_code == 409
    assert lever_on.json()["error"] == "InactiveAncestor"

    listed = await client.get("/api/levers", params={"include_inactive": True})
    assert [l["is_active"] for l in listed.json()] == [False]


async def test_variable_tree_endpoints(client, catalog):
    _, lever = catalog
    energy = await _variable(client, "Energy", lever_id=lever["id"])
    usage = await _variable(client, "Usage", parent_id=energy["id"])
    metering = await _variable(client, "Metering", parent_id=usage["id"])
    await _question(client, metering["id"], "Smart meters?")

    assert metering["path"] == "Energy/Usage/Metering" and metering["level"] == 2

    tree = (await client.get("/api/variables/hierarchy", params={"lever_id": lever["id"]})).json()
    deepest = tree[0]["children"][0]["children"][0]
    assert deepest["name"] == "Metering"
    assert deepest["questions"][0]["text"] == "Smart meters?"

    stats = (await client.get(f"/api/variables/{energy['id']}/stats")).json()
    assert stats == {
        "direct_children": 1,
        "direct_questions": 0,
        "total_descendants": 2,
        "total_questions": 1,
        "level": 0,
        "path": "Energy",
    }

    dry_run = await client.get(
        f"/api/variables/{energy['id']}/can-move", params={"new_parent_id": metering["id"]}
    )
    assert dry_run.json()["can_move"] is False

    cycle = await client.post(
        f"/api/variables/{energy['id']}/move", json={"new_parent_id": metering["id"]}
    )
    assert cycle.status_code == 409
    assert cycle.json()["error"] == "CircularReference"

    renamed = await client.put(f"/api/variables/{energy['id']}", json={"name": "Power"})
    assert renamed.json()["path"] == "Power"
    ancestors = (await client.get(f"/api/variables/{metering['id']}/ancestors")).json()
    assert [a["path"] for a in ancestors] == ["Power", "Power/Usage"]

    clone = await client.post(
        f"/api/variables/{usage['id']}/clone", json={"target_lever_id": lever["id"]}
    )
    assert clone.status_code == 201
    assert clone.json()["name"] == "Usage (Copy)"
    assert clone.json()["level"] == 0


async def test_ownership_and_validation_errors(client, catalog):
    _, lever = catalog
    neither = await client.post("/api/variables", json={"name": "Orphan"})
    assert neither.status_code == 400
    assert neither.json() == {
        "error": "InvalidOwnership",
        "detail": "Creating a variable requires exactly one of parent_id or lever_id "
        "(got parent_id=None, lever_id=None)",
    }

    missing = await client.get("/api/variables/4242")
    assert missing.status_code == 404
    assert missing.json()["error"] == "NotFound"

    energy = await _variable(client, "Energy", lever_id=lever["id"])
    no_options = await client.post(
        "/api/questions",
        json={"variable_id": energy["id"], "text": "Pick one", "type": "single_select"},
    )
    assert no_options.status_code == 422


async def test_two_phase_delete(client, catalog):
    _, lever = catalog
    energy = await _variable(client, "Energy", lever_id=lever["id"])
    usage = await _variable(client, "Usage", parent_id=energy["id"])
    await _variable(client, "Metering", parent_id=usage["id"])
    await _question(client, usage["id"], "Usage tracked?")

    pending = await client.delete(f"/api/variables/{usage['id']}")
    assert pending.status_code == 409
    body = pending.json()
    assert body["error"] == "DestructiveOperationPending"
    assert body["preview"]["total_questions"] == 1
    assert [c["name"] for c in body["preview"]["children_to_reassign"]] == ["Metering"]
    assert (await client.get(f"/api/variables/{usage['id']}")).json()["is_active"] is False

    forced = await client.delete(f"/api/variables/{usage['id']}", params={"force": True})
    assert forced.status_code == 200
    assert forced.json()["deleted_questions"] == 1

    listing = (
        await client.get(
            "/api/variables", params={"lever_id": lever["id"], "include_inactive": True}
        )
    ).json()
    assert [(v["path"], v["is_active"]) for v in listing] == [
        ("Energy", True),
        ("Energy/Metering", False),
    ]


async def test_bulk_import_reports_bad_rows(client, catalog):
    _, lever = catalog
    energy = await _variable(client, "Energy", lever_id=lever["id"])
    records = [
        {"variable_id": energy["id"], "text": "Good row", "type": "single_select", "options": OPTIONS},
        {"variable_id": energy["id"], "text": "", "type": "text"},
        {"variable_id": energy["id"], "text": "Odd type", "type": "slider"},
        {"variable_id": energy["id"], "text": "No options", "type": "multi_select"},
        {"variable_id": 9999, "text": "Lost", "type": "text"},
        {"variable_id": energy["id"], "text": "Free text", "type": "text", "options": OPTIONS},
    ]

    result = await client.post("/api/questions/bulk", json={"records": records})

    assert result.status_code == 201
    body = result.json()
    assert body["created"] == 2
    assert [error.split(":")[0] for error in body["errors"]] == ["Row 3", "Row 4", "Row 5", "Row 6"]
    assert body["errors"][1] == 'Row 4: Invalid type "slider"'

    questions = (await client.get("/api/questions", params={"variable_id": energy["id"]})).json()
    free_text = next(q for q in questions if q["text"] == "Free text")
    assert free_text["options"] is None

    count = await client.get("/api/questions/count", params={"lever_ids": [lever["id"]]})
    assert count.json() == {"count": 2}


async def test_survey_lifecycle_and_scoring(client, catalog):
    pillar, lever = catalog
    energy = await _variable(client, "Energy", lever_id=lever["id"])
    usage = await _variable(client, "Usage", parent_id=energy["id"])
    light = await _question(client, energy["id"], "Policy?", weightage=1.0, order=1)
    heavy = await _question(client, usage["id"], "Metering?", weightage=2.0, order=1)
    await _question(client, usage["id"], "Notes", type="text", options=None, required=False, order=2)

    preview = await client.post("/api/surveys/preview", json={"lever_ids": [lever["id"]]})
    assert preview.json()["count"] == 3

    created = await client.post(
        "/api/surveys/",
        json={"title": "Baseline 2026", "selection": {"lever_ids": [lever["id"]]}},
    )
    assert created.status_code == 201
    survey = created.json()
    assert [q["order"] for q in survey["questions"]] == [1, 2, 3]
    frozen = {q["variable_question_id"]: q["id"] for q in survey["questions"]}

    submission = {
        "respondent_id": "site-17",
        "answers": {str(frozen[light["id"]]): "Partly", str(frozen[heavy["id"]]): "Yes"},
    }
    unpublished = await client.post(f"/api/surveys/{survey['id']}/responses", json=submission)
    assert unpublished.status_code == 400
    assert unpublished.json()["error"] == "SubmissionRejected"

    await client.patch(f"/api/surveys/{survey['id']}/publish", json={"is_published": True})

    draft = await client.post(
        f"/api/surveys/{survey['id']}/responses", json={**submission, "is_draft": True}
    )
    assert draft.status_code == 201
    assert draft.json()["completed_at"] is None

    status = await client.get(
        f"/api/surveys/{survey['id']}/responses/check", params={"respondent_id": "site-17"}
    )
    assert status.json()["has_response"] is True
    assert status.json()["is_completed"] is False
    assert status.json()["answers"] == {str(frozen[light["id"]]): "Partly", str(frozen[heavy["id"]]): "Yes"}
    nobody = await client.get(
        f"/api/surveys/{survey['id']}/responses/check", params={"respondent_id": "site-99"}
    )
    assert nobody.json()["has_response"] is False

    final = await client.post(f"/api/surveys/{survey['id']}/responses", json=submission)
    assert final.status_code == 201
    response = final.json()
    assert response["id"] == draft.json()["id"]
    assert sorted(a["score"] for a in response["answers"]) == [4.0, 10.0]
    # 4 * 1 + 10 * 2
    assert response["score"] == 24.0

    again = await client.post(f"/api/surveys/{survey['id']}/responses", json=submission)
    assert again.status_code == 400

    score = await client.get(
        f"/api/variables/{energy['id']}/score", params={"response_id": response["id"]}
    )
    # SUM: 4 * 1 (own question) + 20 * 1 (Usage: 10 * 2)
    assert score.json()["score"] == 24.0

    lever_score = await client.get(
        f"/api/levers/{lever['id']}/score", params={"response_id": response["id"]}
    )
    assert lever_score.json()["score"] == 24.0
    pillar_score = await client.get(
        f"/api/pillars/{pillar['id']}/score", params={"response_id": response["id"]}
    )
    assert pillar_score.json()["score"] == 24.0

    listing = (await client.get("/api/surveys/")).json()
    assert listing[0]["question_count"] == 3
    assert listing[0]["completed_response_count"] == 1

    # a new selection re-freezes the questions and drops recorded responses
    updated = await client.put(
        f"/api/surveys/{survey['id']}",
        json={"title": "Baseline 2026", "selection": {"variable_ids": [usage["id"]]}},
    )
    assert len(updated.json()["questions"]) == 2
    responses = await client.get(f"/api/surveys/{survey['id']}/responses")
    assert responses.json() == []


async def test_submission_rules(client, catalog):
    _, lever = catalog
    energy = await _variable(client, "Energy", lever_id=lever["id"])
    question = await _question(client, energy["id"], "Policy?")
    future = (datetime.now(timezone.utc) + timedelta(days=7)).isoformat()

    created = await client.post(
        "/api/surveys/",
        json={
            "title": "Limited",
            "allow_anonymous": True,
            "max_responses": 1,
            "selection": {"question_ids": [question["id"]]},
        },
    )
    survey = created.json()
    await client.patch(f"/api/surveys/{survey['id']}/publish", json={"is_published": True})
    sq_id = str(survey["questions"][0]["id"])

    missing_required = await client.post(f"/api/surveys/{survey['id']}/responses", json={})
    assert missing_required.status_code == 400

    first = await client.post(
        f"/api/surveys/{survey['id']}/responses", json={"answers": {sq_id: "Yes"}}
    )
    assert first.status_code == 201
    assert first.json()["respondent_id"] is None

    over_limit = await client.post(
        f"/api/surveys/{survey['id']}/responses", json={"answers": {sq_id: "No"}}
    )
    assert over_limit.status_code == 400
    assert "limit" in over_limit.json()["detail"]

    later = await client.post(
        "/api/surveys/",
        json={
            "title": "Not yet",
            "start_date": future,
            "selection": {"question_ids": [question["id"]]},
        },
    )
    await client.patch(f"/api/surveys/{later.json()['id']}/publish", json={"is_published": True})
    early = await client.post(
        f"/api/surveys/{later.json()['id']}/responses",
        json={"respondent_id": "x", "answers": {sq_id: "Yes"}},
    )
    assert early.status_code == 400
    assert "not started" in early.json()["detail"]


async def test_parallel_submissions_from_one_respondent_keep_one_response(
    client, catalog, monkeypatch
):
    from esg_builder.crud import crud_response

    _, lever = catalog
    energy = await _variable(client, "Energy", lever_id=lever["id"])
    question = await _question(client, energy["id"], "Policy?")
    survey = (
        await client.post(
            "/api/surveys/",
            json={"title": "Race", "selection": {"question_ids": [question["id"]]}},
        )
    ).json()
    await client.patch(f"/api/surveys/{survey['id']}/publish", json={"is_published": True})
    submission = {
        "respondent_id": "u1",
        "answers": {str(survey["questions"][0]["id"]): "Yes"},
        "is_draft": True,
    }

    first = await client.post(f"/api/surveys/{survey['id']}/responses", json=submission)
    assert first.status_code == 201

    # a second request that checked for an existing response before the first committed
    async def nothing_stored_yet(db, survey_id, respondent_id):
        return None

    monkeypatch.setattr(crud_response, "_existing_response", nothing_stored_yet)
    second = await client.post(f"/api/surveys/{survey['id']}/responses", json=submission)

    assert second.status_code == 409
    assert second.json()["error"] == "ConcurrentModification"
    monkeypatch.undo()
    responses = (await client.get(f"/api/surveys/{survey['id']}/responses")).json()
    assert [r["respondent_id"] for r in responses] == ["u1"]
