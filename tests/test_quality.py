"""
Tests for AI quality verification and dispute mediation.
"""
import base64
import json

import pytest

from leila import quality

PHOTO_BYTES = b"\xff\xd8\xff\xe0fake-jpeg"
PHOTO_B64 = base64.b64encode(PHOTO_BYTES).decode()


# ─────────────────────────────────────
#  normalization
# ─────────────────────────────────────

class TestNormalization:

    @pytest.mark.parametrize("score,category", [
        (100, "excellent"), (90, "excellent"), (89, "good"), (80, "good"),
        (79, "needs_improvement"), (60, "needs_improvement"), (59, "unacceptable"), (0, "unacceptable"),
    ])
    def test_category_for_score(self, score, category):
        assert quality.category_for_score(score) == category

    def test_quality_result_clamped_and_derived(self):
        result = quality.normalize_quality_result({"score": "150", "category": "superb", "issues": "loose tile"})
        assert result["score"] == 100
        assert result["passed"] is True
        assert result["category"] == "excellent"
        assert result["issues"] == ["loose tile"]

    def test_missing_score_uses_fallback(self):
        result = quality.normalize_quality_result({})
        assert result["score"] == 70
        assert result["passed"] is False
        assert result["requiresRework"] is False

    def test_unacceptable_requires_rework_by_default(self):
        assert quality.normalize_quality_result({"score": 20})["requiresRework"] is True

    def test_dispute_normalized(self):
        result = quality.normalize_dispute({"decision": "refund everything", "paymentAdjustment": -20})
        assert result["decision"] == "escalate"
        assert result["paymentAdjustment"] == 0
        assert result["recommendations"] == {"forContractor": [], "forCustomer": []}


# ─────────────────────────────────────
#  model backed checks
# ─────────────────────────────────────

class TestAnalyzeWorkPhotos:

    def test_sends_photos_and_parses_fenced_json(self, ai):
        ai.return_value = '```json\n{"score": 86, "issues": [], "recommendations": ["Seal edges"], "category": "good"}\n```'
        photos = [
            quality.WorkPhoto(type="before", data=PHOTO_B64),
            quality.WorkPhoto(type="after", data=PHOTO_B64),
            quality.WorkPhoto(type="after", url="https://example.com/no-data.jpg"),
        ]
        result = quality.analyze_work_photos(photos, "plumbing", "Replace faucet")

        assert result == {
            "score": 86,
            "passed": True,
            "issues": [],
            "recommendations": ["Seal edges"],
            "requiresRework": False,
            "category": "good",
        }
        prompt = ai.call_args.args[0]
        assert "- Before: 1 photos" in prompt
        assert "- After: 2 photos" in prompt
        assert ai.call_args.kwargs["images"] == [(PHOTO_BYTES, "image/jpeg"), (PHOTO_BYTES, "image/jpeg")]
        assert ai.call_args.kwargs["json_output"] is True

    def test_unparseable_reply_falls_back(self, ai):
        ai.return_value = "The photos look fine to me."
        result = quality.analyze_work_photos([quality.WorkPhoto(data=PHOTO_B64)], "cleaning", "")
        assert result["score"] == 70
        assert result["category"] == "needs_improvement"

    def test_model_error_raises(self, ai):
        ai.side_effect = RuntimeError("boom")
        with pytest.raises(quality.QualityVerificationError):
            quality.analyze_work_photos([quality.WorkPhoto(data=PHOTO_B64)], "cleaning", "")


class TestDisputeAndPlans:

    def test_resolve_dispute(self, ai):
        ai.return_value = json.dumps({
            "decision": "partial_approve",
            "reasoning": "Most of the work was done",
            "paymentAdjustment": 75,
            "recommendations": {"forContractor": ["Finish trim"], "forCustomer": []},
        })
        result = quality.resolve_dispute(
            "Job complete", "Trim missing", 4, "painting", 500, "Paint living room", ["call on Monday"],
        )
        assert result["decision"] == "partial_approve"
        assert result["paymentAdjustment"] == 75
        assert "call on Monday" in ai.call_args.args[0]

    def test_improvement_plan_requires_jobs(self):
        with pytest.raises(ValueError):
            quality.generate_improvement_plan("pro-1", [], "plumbing")

    def test_improvement_plan_merges_partial_reply(self, ai):
        ai.return_value = '{"strengths": ["Punctual"], "overallRating": 500}'
        plan = quality.generate_improvement_plan(
            "pro-1", [{"score": 70, "issues": ["Messy"]}, {"score": 90, "issues": []}], "plumbing",
        )
        assert plan["strengths"] == ["Punctual"]
        assert plan["overallRating"] == 100
        assert plan["certificationSuggestions"] == ["plumbing Master Certification"]
        assert "Messy" in ai.call_args.args[0]


class TestRealtimeAndText:

    def test_retake_flagged(self, ai):
        ai.return_value = "The image is blurry, please retake it with more light."
        result = quality.analyze_photo_realtime(PHOTO_BYTES, "drywall", "after")
        assert result["isAcceptable"] is False
        assert result["retakeRequired"] is True
        assert result["suggestions"] == quality.RETAKE_SUGGESTIONS

    def test_good_photo(self, ai):
        ai.return_value = "Clear, well framed photo of the finished wall."
        assert quality.analyze_photo_realtime(PHOTO_BYTES, "drywall", "after")["isAcceptable"] is True

    def test_model_failure_accepts_photo(self, ai):
        ai.side_effect = RuntimeError("timeout")
        result = quality.analyze_photo_realtime(PHOTO_BYTES, "drywall", "during")
        assert result["isAcceptable"] is True
        assert result["feedback"] == "Photo uploaded successfully"

    def test_parse_verification_text(self):
        text = (
            "Overall the install is solid.\n"
            "Quality score: 82\n"
            "One issue: the caulk line is uneven.\n"
            "I recommend re-caulking the left side."
        )
        result = quality.parse_verification_text(text)
        assert result["score"] == 82
        assert result["issues"] == ["One issue: the caulk line is uneven."]
        assert result["recommendations"] == ["I recommend re-caulking the left side."]
        assert result["summary"] == "Overall the install is solid. Quality score: 82"

    def test_parse_verification_defaults(self):
        result = quality.parse_verification_text("")
        assert result["score"] == 75
        assert result["summary"] == "Analysis complete"
        assert result["issues"] == ["No issues found"]


# ─────────────────────────────────────
#  routes
# ─────────────────────────────────────

class TestQualityRoutes:

    def test_analyze_not_configured(self, client, customer_headers):
        response = client.post("/api/v1/quality/analyze", headers=customer_headers, json={
            "photos": [{"data": PHOTO_B64}], "serviceType": "plumbing",
        })
        assert response.status_code == 503

    def test_analyze_updates_booking(self, client, fake_db, ai, contractor_headers):
        fake_db.set_document("bookings", "b1", {"status": "completed", "customerId": "customer-1", "contractorId": "pro-1"})
        ai.return_value = '{"score": 92}'
        response = client.post("/api/v1/quality/analyze", headers=contractor_headers, json={
            "photos": [{"data": PHOTO_B64, "type": "after"}], "serviceType": "plumbing", "bookingId": "b1",
        })
        assert response.status_code == 200
        assert response.json()["category"] == "excellent"
        assert fake_db.get_document("bookings", "b1")["qualityCheck"]["score"] == 92
        log = fake_db.all("activity_logs")[0]
        assert log["action"]["category"] == "AI_IMAGE_ANALYSIS"
        assert log["ai"]["confidence"] == pytest.approx(0.92)

    @pytest.mark.parametrize("uid,role", [("customer-1", "customer"), ("pro-2", "contractor")])
    def test_analyze_other_peoples_booking(self, client, fake_db, ai, auth_headers, uid, role):
        fake_db.set_document("bookings", "b1", {"status": "completed", "customerId": "customer-1", "contractorId": "pro-1"})
        ai.return_value = '{"score": 10}'
        response = client.post("/api/v1/quality/analyze", headers=auth_headers(uid, role), json={
            "photos": [{"data": PHOTO_B64}], "serviceType": "plumbing", "bookingId": "b1",
        })
        assert response.status_code == 403
        assert "qualityCheck" not in fake_db.get_document("bookings", "b1")
        ai.assert_not_called()

    def test_analyze_unknown_booking(self, client, ai, admin_headers):
        response = client.post("/api/v1/quality/analyze", headers=admin_headers, json={
            "photos": [{"data": PHOTO_B64}], "serviceType": "plumbing", "bookingId": "missing",
        })
        assert response.status_code == 404

    def test_analyze_bad_base64(self, client, ai, customer_headers):
        response = client.post("/api/v1/quality/analyze", headers=customer_headers, json={
            "photos": [{"data": "not base64!!"}], "serviceType": "plumbing",
        })
        assert response.status_code == 400

    def test_analyze_model_failure(self, client, ai, customer_headers):
        ai.side_effect = RuntimeError("down")
        response = client.post("/api/v1/quality/analyze", headers=customer_headers, json={
            "photos": [{"data": PHOTO_B64}], "serviceType": "plumbing",
        })
        assert response.status_code == 502

    def test_dispute_is_admin_only(self, client, ai, customer_headers):
        response = client.post("/api/v1/quality/dispute", headers=customer_headers, json={
            "contractorClaim": "done", "customerComplaint": "not done",
            "contractDetails": {"serviceType": "painting", "agreedPrice": 300},
        })
        assert response.status_code == 403

    def test_dispute_logged_for_approval(self, client, fake_db, ai, admin_headers):
        ai.return_value = '{"decision": "require_rework", "reasoning": "Visible gaps", "paymentAdjustment": 50}'
        response = client.post("/api/v1/quality/dispute", headers=admin_headers, json={
            "bookingId": "b1", "contractorClaim": "done", "customerComplaint": "gaps in paint",
            "contractDetails": {"serviceType": "painting", "agreedPrice": 300},
        })
        assert response.status_code == 200
        assert response.json()["decision"] == "require_rework"
        log = fake_db.all("activity_logs")[0]
        assert log["action"]["status"] == "PENDING_APPROVAL"
        assert log["ai"]["reasoning"] == "Visible gaps"

    def test_improvement_plan_empty_jobs(self, client, ai, customer_headers):
        response = client.post("/api/v1/quality/improvement-plan", headers=customer_headers, json={
            "contractorId": "pro-1", "recentJobs": [], "serviceType": "hvac",
        })
        assert response.status_code == 400

    def test_verify_photo_requires_fields(self, client, ai):
        assert client.post("/api/v1/quality/verify-photo", json={"imageData": PHOTO_B64}).status_code == 400

    def test_verify_photo(self, client, ai):
        ai.return_value = "Score: 91\nWork looks complete."
        response = client.post("/api/v1/quality/verify-photo", json={
            "imageData": f"data:image/jpeg;base64,{PHOTO_B64}", "prompt": "Is the sink installed?",
        })
        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["analysis"]["score"] == 91
        assert body["rawResponse"].startswith("Score: 91")
        assert ai.call_args.kwargs["images"] == [(PHOTO_BYTES, "image/jpeg")]

    def test_verify_photo_not_configured(self, client):
        response = client.post("/api/v1/quality/verify-photo", json={"imageData": PHOTO_B64, "prompt": "ok?"})
        assert response.status_code == 503
