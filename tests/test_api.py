from __future__ import annotations

from datetime import timedelta

import pytest

from quality_review.infrastructure.config import reset_settings
from tests.factories import T0, add_assignee, add_card, add_cycle, add_evaluation, as_user


def score_body(world, **by_name: str) -> dict:
    return {
        "scores": [
            {"dimensionId": world.dimensions[name], "score": value}
            for name, value in by_name.items()
        ]
    }


class TestIdentityAndErrors:
    def test_health_needs_no_identity(self, client):
        response = client.get("/api/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    @pytest.mark.parametrize("headers", [{}, {"X-User-Id": "abc"}, {"X-User-Id": "0"}])
    def test_missing_or_malformed_identity(self, client, world, headers):
        response = client.get("/api/review-questions", headers=headers)
        assert response.status_code == 401
        assert response.json()["error"]["kind"] == "unauthorized"

    def test_identity_header_is_configurable(self, client, world, monkeypatch):
        monkeypatch.setenv("APP_IDENTITY_HEADER", "X-Reviewer")
        reset_settings()
        response = client.get(
            "/api/review-questions", headers={"X-Reviewer": str(world.users["lead"])}
        )
        assert response.status_code == 200

    def test_unknown_user_is_not_found(self, client, world):
        response = client.get("/api/review-questions", headers=as_user(999))
        assert response.status_code == 404
        assert response.json()["error"]["message"] == "User not found"

    def test_error_envelope(self, client, world):
        response = client.get(
            f"/api/cycles/{world.cycle_id}/evaluate", headers=as_user(world.users["viewer"])
        )
        assert response.status_code == 403
        assert response.json() == {
            "error": {
                "kind": "forbidden",
                "message": "Viewer users cannot access quality scores",
                "details": {"required": "non_viewer"},
            }
        }

    def test_malformed_body_is_a_validation_error(self, client, world):
        response = client.put(
            "/api/review-questions/reorder",
            json={"questionIds": "nope"},
            headers=as_user(world.users["admin"]),
        )
        assert response.status_code == 400
        body = response.json()["error"]
        assert body["kind"] == "validation"
        assert body["details"]["errors"][0]["field"] == "questionIds"


class TestReviewQuestionRoutes:
    def test_list_uses_camel_case(self, client, world):
        response = client.get("/api/review-questions", headers=as_user(world.users["po"]))
        assert response.status_code == 200
        body = response.json()
        assert body["scoringOptions"] == ["LOW", "MEDIUM", "HIGH", "NOT_APPLICABLE"]
        first = body["questions"][0]
        assert first["name"] == "Code quality"
        assert first["isActive"] is True
        assert first["audience"] == "LEAD"
        assert first["roles"] == ["LEAD"]
        assert body["questions"][2]["roles"] == ["LEAD", "PO"]

    def test_create_returns_201(self, client, world):
        response = client.post(
            "/api/review-questions",
            json={"name": "Docs", "audience": "PO", "unitTypes": ["TASK"]},
            headers=as_user(world.users["admin"]),
        )
        assert response.status_code == 201
        body = response.json()
        assert body["position"] == 4
        assert body["roles"] == ["PO"]
        assert body["unitTypes"] == ["TASK"]

    def test_create_is_rolled_back_on_failure(self, client, world):
        response = client.post(
            "/api/review-questions", json={"name": ""}, headers=as_user(world.users["admin"])
        )
        assert response.status_code == 400
        listing = client.get("/api/review-questions", headers=as_user(world.users["admin"]))
        assert len(listing.json()["questions"]) == 3

    def test_patch_and_delete(self, client, world):
        code = world.dimensions["code"]
        admin = as_user(world.users["admin"])

        patched = client.patch(f"/api/review-questions/{code}", json={"isActive": False}, headers=admin)
        assert patched.status_code == 200
        assert patched.json()["isActive"] is False

        rejected = client.patch(f"/api/review-questions/{code}", json={"isActive": None}, headers=admin)
        assert rejected.status_code == 400
        assert rejected.json()["error"]["message"] == "isActive must be a boolean"

        deleted = client.delete(f"/api/review-questions/{code}?hard=true", headers=admin)
        assert deleted.json() == {"id": code, "deleted": True, "deactivated": False}

    def test_reorder_and_roles(self, client, world):
        code, acceptance, polish = world.dimensions.values()
        admin = as_user(world.users["admin"])

        reordered = client.put(
            "/api/review-questions/reorder",
            json={"questionIds": [acceptance, polish, code]},
            headers=admin,
        )
        assert [q["id"] for q in reordered.json()] == [acceptance, polish, code]

        audience = client.put(
            f"/api/review-questions/{code}/audience", json={"audience": "BOTH"}, headers=admin
        )
        assert audience.json()["roles"] == ["LEAD", "PO"]

        roles = client.put(
            f"/api/review-questions/{code}/roles", json={"roles": ["HEAD_OF_ART"]}, headers=admin
        )
        assert roles.json()["roles"] == ["HEAD_OF_ART"]
        assert roles.json()["audience"] == "BOTH"

    @pytest.mark.parametrize(
        "method, path, body, field",
        [
            ("post", "/api/review-questions", {"name": 42}, "name"),
            ("put", "/api/review-questions/{id}/audience", {"audience": ["PO"]}, "audience"),
            ("put", "/api/review-questions/{id}/roles", {"roles": "LEAD"}, "roles"),
        ],
    )
    def test_mistyped_bodies_are_rejected(self, client, world, method, path, body, field):
        url = path.format(id=world.dimensions["code"])
        response = client.request(method, url, json=body, headers=as_user(world.users["admin"]))

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["kind"] == "validation"
        assert [item["field"] for item in error["details"]["errors"]] == [field]

    def test_members_cannot_manage_questions(self, client, world):
        response = client.post(
            "/api/review-questions", json={"name": "Nope"}, headers=as_user(world.users["lead"])
        )
        assert response.status_code == 403


class TestEvaluationRoutes:
    def test_form_then_submit_then_patch(self, client, world):
        lead = as_user(world.users["lead"])
        url = f"/api/cycles/{world.cycle_id}/evaluate"

        form = client.get(url, headers=lead).json()
        assert form["canEdit"] is True
        assert form["hasExistingEvaluation"] is False
        assert form["evaluatorRoles"] == ["LEAD"]
        assert [d["name"] for d in form["dimensions"]] == ["Code quality", "Polish"]
        assert form["scoringOptions"][0] == "LOW"

        created = client.post(url, json=score_body(world, code="HIGH"), headers=lead)
        assert created.status_code == 201
        assert created.json()["scoreCount"] == 1
        assert created.json()["cardTitle"] == "Login form"

        duplicate = client.post(url, json=score_body(world, code="LOW"), headers=lead)
        assert duplicate.status_code == 409
        assert duplicate.json()["error"]["kind"] == "conflict"

        patched = client.patch(url, json=score_body(world, code="LOW", polish="LOW"), headers=lead)
        assert patched.status_code == 200
        assert patched.json()["scoreCount"] == 2
        assert patched.json()["submittedAt"] == created.json()["submittedAt"]

        form = client.get(url, headers=lead).json()
        assert {s["score"] for s in form["existingEvaluation"]["scores"]} == {"LOW"}

    def test_ineligible_dimension(self, client, world):
        response = client.post(
            f"/api/cycles/{world.cycle_id}/evaluate",
            json=score_body(world, acceptance="HIGH"),
            headers=as_user(world.users["lead"]),
        )
        assert response.status_code == 400
        assert "is not eligible" in response.json()["error"]["message"]

    def test_missing_scores_key(self, client, world):
        response = client.post(
            f"/api/cycles/{world.cycle_id}/evaluate", json={}, headers=as_user(world.users["lead"])
        )
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "scores must be a non-empty array"

    def test_unknown_cycle(self, client, world):
        response = client.get("/api/cycles/999/evaluate", headers=as_user(world.users["lead"]))
        assert response.status_code == 404

    def test_cycle_summary_with_configured_threshold(self, client, world, monkeypatch):
        monkeypatch.setenv("REVIEW_DIVERGENCE_THRESHOLD", "1")
        reset_settings()
        url = f"/api/cycles/{world.cycle_id}/evaluate"
        client.post(url, json=score_body(world, polish="HIGH"), headers=as_user(world.users["lead"]))
        client.post(url, json=score_body(world, polish="MEDIUM"), headers=as_user(world.users["po"]))

        summary = client.get(
            f"/api/cycles/{world.cycle_id}/evaluations", headers=as_user(world.users["lead"])
        ).json()

        assert summary["evaluationsCount"] == 2
        assert summary["overallAverage"] == 2.5
        assert summary["qualityTier"] == "HIGH"
        [flag] = summary["divergenceFlags"]
        assert flag["roleA"] == "LEAD" and flag["roleB"] == "PO"
        assert flag["difference"] == 1.0

    def test_pending_list(self, client, world):
        body = client.get("/api/me/pending-evaluations", headers=as_user(world.users["po"])).json()
        assert body["evaluatorRoles"] == ["PO"]
        assert body["pendingCount"] == 1
        [item] = body["pending"]
        assert item["isInReview"] is True
        assert item["eligibleDimensionCount"] == 2
        assert item["card"]["boardName"] == "Falcon"


class TestLifecycleRoutes:
    def test_moving_to_done_locks_evaluations(self, client, world):
        lead = as_user(world.users["lead"])
        url = f"/api/cycles/{world.cycle_id}/evaluate"
        client.post(url, json=score_body(world, code="HIGH"), headers=lead)

        moved = client.post(
            f"/api/cards/{world.card_id}/review-cycles/transition",
            json={"from": {"inReview": True}, "to": {"done": True}, "at": "2026-03-03T10:00:00Z"},
            headers=lead,
        )
        assert moved.status_code == 200
        assert moved.json()["cardLocked"] is True
        assert moved.json()["finalCycleId"] == world.cycle_id

        locked = client.patch(url, json=score_body(world, code="LOW"), headers=lead)
        assert locked.status_code == 403
        assert locked.json()["error"]["message"] == "Card is completed. Evaluations are locked"

        quality = client.get(f"/api/cards/{world.card_id}/quality", headers=lead).json()
        assert quality["finalCycle"]["cycleId"] == world.cycle_id
        assert quality["finalCycle"]["lockedAt"] == "2026-03-03T10:00:00"
        assert quality["progression"] == [
            {"cycleNumber": 1, "overallAverage": 3.0, "qualityTier": "HIGH"}
        ]

    def test_unknown_card(self, client, world):
        response = client.post(
            "/api/cards/999/review-cycles/transition",
            json={"from": {}, "to": {"inReview": True}},
            headers=as_user(world.users["lead"]),
        )
        assert response.status_code == 404

    def test_card_cycles_and_current_cycle(self, client, world):
        lead = as_user(world.users["lead"])
        client.post(
            f"/api/cycles/{world.cycle_id}/evaluate", json=score_body(world, code="HIGH"), headers=lead
        )

        listed = client.get(f"/api/cards/{world.card_id}/cycles", headers=lead)
        assert listed.status_code == 200
        body = listed.json()
        assert body["card"]["boardName"] == "Falcon"
        [cycle] = body["cycles"]
        assert cycle["id"] == world.cycle_id
        assert cycle["evaluationsCount"] == 1
        assert cycle["hasCurrentUserEvaluation"] is True
        assert cycle["currentUserEvaluationUpdatedAt"] is not None

        current = client.get(
            f"/api/cards/{world.card_id}/cycles/current", headers=as_user(world.users["po"])
        ).json()
        assert current["cycle"]["cycleNumber"] == 1
        assert current["cycle"]["hasCurrentUserEvaluation"] is False

    def test_card_cycles_access_and_missing_cards(self, client, world):
        viewer = client.get(
            f"/api/cards/{world.card_id}/cycles", headers=as_user(world.users["viewer"])
        )
        assert viewer.status_code == 403
        missing = client.get("/api/cards/999/cycles/current", headers=as_user(world.users["lead"]))
        assert missing.status_code == 404


class TestMetricRoutes:
    def test_velocity_is_rounded_for_output(self, client, world, SessionLocal):
        with SessionLocal() as s:
            for title, points, label in [("Low", 3, "LOW"), ("Medium", 4, "MEDIUM")]:
                card = add_card(
                    s,
                    world.board_id,
                    title,
                    payload={"storyPoints": points},
                    phase="DONE",
                    completed_at=T0 + timedelta(days=1),
                )
                cycle = add_cycle(s, card.id, is_final=True, locked_at=T0 + timedelta(days=1))
                add_evaluation(s, cycle.id, world.users["lead"], {world.dimensions["code"]: label})
            s.commit()

        response = client.get(
            f"/api/metrics/quality-adjusted-velocity?projectId={world.board_id}",
            headers=as_user(world.users["po"]),
        )
        assert response.status_code == 200
        body = response.json()
        assert body["projectId"] == world.board_id
        assert body["totals"] == {
            "doneTaskCount": 2,
            "scoredTaskCount": 2,
            "totalRawPoints": 7.0,
            "totalAdjustedPoints": 4.7,
            "totalAdjustmentDelta": -2.3,
            "overallAdjustmentFactor": 0.671,
        }
        [week] = body["series"]
        assert week["weekStart"] == "2026-03-02"
        assert week["cumulative"]["adjustedPoints"] == 4.7

    def test_velocity_needs_an_evaluator_role(self, client, world):
        response = client.get(
            "/api/metrics/quality-adjusted-velocity", headers=as_user(world.users["developer"])
        )
        assert response.status_code == 403

    def test_project_summary(self, client, world):
        response = client.get(
            f"/api/metrics/projects/{world.board_id}/quality-summary",
            headers=as_user(world.users["lead"]),
        )
        assert response.status_code == 200
        body = response.json()
        assert body["projectName"] == "Falcon"
        assert body["totals"]["overallQualityTier"] == "UNSCORED"
        assert body["tierDistribution"] == {"HIGH": 0, "MEDIUM": 0, "LOW": 0, "UNSCORED": 0}
        assert body["iterationMetrics"]["highChurnThreshold"] == 3
        assert [d["count"] for d in body["perDimension"]] == [0, 0, 0]

    def test_unknown_project(self, client, world):
        response = client.get(
            "/api/metrics/projects/999/quality-summary", headers=as_user(world.users["lead"])
        )
        assert response.status_code == 404
        assert response.json()["error"]["message"] == "Project not found"

    def test_iteration_distribution_is_rounded_for_output(self, client, world, SessionLocal):
        with SessionLocal() as s:
            reviewed = add_card(s, world.board_id, "Reviewed", payload={"storyPoints": 3}, phase="DONE")
            cycle = add_cycle(s, reviewed.id, is_final=True, locked_at=T0 + timedelta(days=1))
            add_evaluation(s, cycle.id, world.users["lead"], {world.dimensions["code"]: "HIGH"})
            add_card(s, world.board_id, "Quick fix", phase="DONE")
            add_card(s, world.board_id, "Typo", phase="DONE")
            s.commit()

        response = client.get(
            f"/api/metrics/iteration-distribution?projectId={world.board_id}",
            headers=as_user(world.users["po"]),
        )
        assert response.status_code == 200
        body = response.json()
        assert body["projectId"] == world.board_id
        assert body["totals"]["doneTaskCount"] == 3
        assert body["totals"]["averageCyclesToDone"] == 0.33
        never, once = body["distribution"]
        assert (never["cycleCount"], never["percentage"]) == (0, 66.67)
        assert (once["cycleCount"], once["percentage"], once["qualityTier"]) == (1, 33.33, "HIGH")
        assert body["correlation"] == [
            {"cycleCount": 0, "averageQuality": None, "sampleSize": 2},
            {"cycleCount": 1, "averageQuality": 3.0, "sampleSize": 1},
        ]

    def test_user_quality_summary(self, client, world, SessionLocal):
        with SessionLocal() as s:
            card = add_card(s, world.board_id, "Reviewed", phase="DONE")
            cycle = add_cycle(s, card.id, is_final=True, locked_at=T0 + timedelta(days=1))
            add_evaluation(s, cycle.id, world.users["lead"], {world.dimensions["code"]: "MEDIUM"})
            add_assignee(s, card.id, world.users["developer"])
            s.commit()

        response = client.get(
            f"/api/metrics/users/{world.users['developer']}/quality-summary",
            headers=as_user(world.users["lead"]),
        )
        assert response.status_code == 200
        body = response.json()
        assert body["userName"] == "Dev"
        assert body["totals"] == {
            "finalizedTaskCount": 1,
            "overallAverage": 2.0,
            "overallQualityTier": "MEDIUM",
        }
        [task] = body["latestFinalized"]
        assert task["cardTitle"] == "Reviewed"
        assert task["boardName"] == "Falcon"
        assert task["weekStart"] == "2026-03-02"
        assert body["progression"] == body["latestFinalized"]

    def test_user_quality_summary_for_unknown_user(self, client, world):
        response = client.get(
            "/api/metrics/users/999/quality-summary", headers=as_user(world.users["lead"])
        )
        assert response.status_code == 404
