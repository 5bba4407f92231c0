from __future__ import annotations

from collections import Counter

import pytest

ORIGINAL = "https://panel.example.com/s/1?pid={{PANELIST IDENTIFIER}}"


async def generate(client, **body):
    return await client.post("/links/generate", json={"originalUrl": ORIGINAL, **body})


async def listed(client, project_id, **params):
    resp = await client.get("/links", params={"projectId": project_id, **params})
    assert resp.status_code == 200
    return resp.json()


async def test_small_batch(client, project):
    p, _ = project
    resp = await generate(client, projectId=p.id, testCount=2, liveCount=2)

    assert resp.status_code == 200
    data = resp.json()
    assert data["success"] is True
    assert data["count"] == len(data["links"]) == 4
    assert data["failed"] == 0 and data["failures"] == []
    assert data["timedOut"] is False
    assert Counter(ln["linkType"] for ln in data["links"]) == {"TEST": 2, "LIVE": 2}
    assert (await listed(client, p.id))["count"] == 4

    link = data["links"][0]
    assert link["uid"].startswith("TEST_")
    assert link["respId"] == link["uid"]
    assert link["status"] == "UNUSED"
    assert link["wrapperUrl"] == f"https://surveys.example.com/s/{p.id}/{link['uid']}"
    assert link["originalUrl"] == f"https://panel.example.com/s/1?pid={link['uid']}"
    assert link["metadata"]["generationMethod"] == "server-batch"
    assert link["metadata"]["batchId"] == data["batchId"]
    assert resp.headers["X-Process-Time-ms"]


async def test_vendor_split_per_vendor(client, project):
    p, (v1, v2) = project
    resp = await generate(
        client, projectId=p.id, testCount=10, liveCount=40, vendorIds=[v1.id, v2.id], generatePerVendor=True
    )

    data = resp.json()
    assert resp.status_code == 200
    assert data["count"] == len(data["links"]) == 100
    assert data["expected"] == data["actual"] == {"TEST": 20, "LIVE": 80}
    assert Counter(ln["vendorId"] for ln in data["links"]) == {v1.id: 50, v2.id: 50}
    assert len({ln["uid"] for ln in data["links"]}) == 100
    assert all(ln["uid"].startswith(("AAA_", "BBB_")) for ln in data["links"])
    assert {ln["vendor"]["name"] for ln in data["links"]} == {"Alpha Panels", "Beta Sample"}
    # vendor by vendor in request order
    assert data["links"][0]["vendorId"] == v1.id and data["links"][-1]["vendorId"] == v2.id

    stored = await listed(client, p.id)
    assert stored["count"] == 100
    assert (await listed(client, p.id, vendorId=v2.id, linkType="TEST"))["count"] == 10


async def test_pooled_split_across_vendors(client, project):
    p, (v1, v2) = project
    resp = await generate(
        client, projectId=p.id, testCount=5, liveCount=10, vendorIds=[v1.id, v2.id], generatePerVendor=False
    )

    data = resp.json()
    assert data["count"] == 15
    per = Counter((ln["vendorId"], ln["linkType"]) for ln in data["links"])
    assert per[(v1.id, "TEST")] == 3 and per[(v2.id, "TEST")] == 2
    assert per[(v1.id, "LIVE")] == 5 and per[(v2.id, "LIVE")] == 5


async def test_weighted_split(client, project):
    p, (v1, v2) = project
    resp = await generate(
        client, projectId=p.id, liveCount=20, vendorIds=[v1.id, v2.id], generatePerVendor=False, vendorWeights=[3, 1]
    )
    assert Counter(ln["vendorId"] for ln in resp.json()["links"]) == {v1.id: 15, v2.id: 5}


async def test_single_count_and_consent_url(client, project):
    p, (v1, _) = project
    resp = await generate(
        client, projectId=p.id, count=3, linkType="TEST", vendorId=v1.id, useConsentUrl=True, geoRestriction=["US"]
    )
    data = resp.json()
    assert data["count"] == 3
    for ln in data["links"]:
        assert ln["linkType"] == "TEST"
        assert ln["uid"].startswith("AAA_TEST_")
        assert ln["wrapperUrl"].startswith(f"https://surveys.example.com/survey/{p.id}/")
        assert ln["metadata"]["geoRestriction"] == ["US"]


@pytest.mark.parametrize(
    "body,status",
    [
        ({}, 400),
        ({"testCount": 0, "liveCount": 0}, 400),
        ({"count": 10001}, 400),
        ({"testCount": -1, "liveCount": 5}, 400),
        ({"count": 5, "originalUrl": ""}, 400),
        ({"count": 5, "timeoutSeconds": -1}, 400),
    ],
)
async def test_generate_validation(client, project, body, status):
    p, _ = project
    resp = await client.post("/links/generate", json={"projectId": p.id, "originalUrl": ORIGINAL, **body})
    assert resp.status_code == status
    assert resp.json()["success"] is False
    assert (await listed(client, p.id))["count"] == 0


async def test_per_vendor_limits(client, project):
    p, (v1, v2) = project
    resp = await generate(client, projectId=p.id, liveCount=5001, vendorIds=[v1.id, v2.id], generatePerVendor=True)
    assert resp.status_code == 400
    assert "5,000" in resp.json()["message"]


async def test_generate_unknown_project_and_vendors(client, project, gateway):
    p, _ = project
    assert (await generate(client, projectId="nope", count=1)).status_code == 404
    assert (await generate(client, projectId=p.id, count=1, vendorIds=["ghost"])).status_code == 404

    outsider = await gateway.create_vendor(name="Outsider", code="OUT")
    resp = await generate(client, projectId=p.id, count=1, vendorIds=[outsider.id])
    assert resp.status_code == 400
    assert "does not belong" in resp.json()["message"]


def client_links(project_id, vendor_id, n, url="https://panel.example.com/s/1?pid=R{i}"):
    return [
        {
            "id": f"c{i}",
            "respId": f"R{i:04d}",
            "originalUrl": url.format(i=i),
            "wrapperUrl": f"https://surveys.example.com/s/{project_id}/R{i:04d}",
            "linkType": "LIVE" if i % 2 else "TEST",
            "vendorId": vendor_id,
            "projectId": project_id,
        }
        for i in range(n)
    ]


async def test_save_batch_and_resubmit(client, project):
    p, (v1, _) = project
    body = {"projectId": p.id, "links": client_links(p.id, v1.id, 20)}

    first = await client.post("/links/save-batch", json=body)
    assert first.status_code == 200
    data = first.json()
    assert data["success"] is True
    assert data["saved"] == data["total"] == 20
    assert data["failed"] == 0

    again = await client.post("/links/save-batch", json=body)
    assert again.json()["saved"] == 20
    assert (await listed(client, p.id))["count"] == 20

    stored = (await listed(client, p.id))["links"][0]
    assert stored["metadata"]["generationMethod"] == "client-side-batch"
    assert stored["metadata"]["batchId"]
    assert stored["metadata"]["generatedAt"]


async def test_save_batch_partial_failure_under_threshold(client, project):
    p, (v1, _) = project
    await client.post(
        "/links/save-batch",
        json={"projectId": p.id, "links": client_links(p.id, v1.id, 1, url="https://elsewhere.test/{i}")},
    )

    resp = await client.post("/links/save-batch", json={"projectId": p.id, "links": client_links(p.id, v1.id, 20)})

    assert resp.status_code == 200
    data = resp.json()
    assert data["saved"] == 19
    assert data["failed"] == 1
    assert data["failures"][0]["uid"] == "R0000"
    assert data["failures"][0]["kind"] == "conflict"


async def test_save_batch_over_threshold_is_500(client, project):
    p, (v1, _) = project
    await client.post(
        "/links/save-batch",
        json={"projectId": p.id, "links": client_links(p.id, v1.id, 10, url="https://elsewhere.test/{i}")},
    )

    resp = await client.post("/links/save-batch", json={"projectId": p.id, "links": client_links(p.id, v1.id, 10)})

    assert resp.status_code == 500
    data = resp.json()
    assert data["success"] is False
    assert data["saved"] == 0
    assert data["failed"] == 10


async def test_save_batch_validation(client, project):
    p, _ = project
    assert (await client.post("/links/save-batch", json={"projectId": p.id, "links": []})).status_code == 400
    assert (await client.post("/links/save-batch", json={"projectId": "nope", "links": [{"respId": "x"}]})).status_code == 404
    bad = await client.post("/links/save-batch", json={"projectId": p.id, "links": [{"respId": "x", "linkType": "BOGUS"}]})
    assert bad.status_code == 400


async def one_link(client, project_id):
    data = (await generate(client, projectId=project_id, count=1)).json()
    return data["links"][0]


async def test_flag_twice_keeps_latest_reason_and_provenance(client, project):
    p, _ = project
    link = await one_link(client, p.id)

    r1 = await client.post("/links/flag", json={"projectId": p.id, "uid": link["uid"], "reason": "speeding"})
    assert r1.status_code == 200
    r2 = await client.post(
        "/links/flag",
        json={
            "projectId": p.id,
            "uid": link["uid"],
            "reason": "straight-lining",
            "metadata": {
                "score": 12,
                "originalUrl": "https://elsewhere.test/",
                "wrapperUrl": "https://elsewhere.test/w",
                "batchId": "batch_forged",
                "manualReview": {"status": "APPROVED"},
                "flagReason": "overridden",
            },
        },
    )
    assert r2.status_code == 200

    stored = (await listed(client, p.id))["links"][0]
    meta = stored["metadata"]
    assert stored["status"] == "FLAGGED"
    assert meta["flagged"] is True
    assert meta["flagReason"] == "straight-lining"
    assert meta["flaggedAt"]
    assert meta["score"] == 12
    assert meta["batchId"] == link["metadata"]["batchId"]
    assert meta["generationMethod"] == "server-batch"
    assert meta["originalUrl"] == link["originalUrl"]
    assert meta["wrapperUrl"] == link["wrapperUrl"]
    assert "manualReview" not in meta

    flags = (await client.get("/qc/flags", params={"projectId": p.id})).json()
    assert [ln["uid"] for ln in flags["links"]] == [link["uid"]]
    assert sorted(f["reason"] for f in flags["flags"]) == ["speeding", "straight-lining"]


async def test_flag_errors(client, project):
    p, _ = project
    assert (await client.post("/links/flag", json={"projectId": p.id, "uid": "nope", "reason": "x"})).status_code == 404
    link = await one_link(client, p.id)
    assert (await client.post("/links/flag", json={"projectId": p.id, "uid": link["uid"]})).status_code == 400


async def test_qc_review_transitions(client, project):
    p, _ = project
    link = await one_link(client, p.id)
    r = await client.post(
        "/links/update-status", json={"projectId": p.id, "uid": link["uid"], "status": "DISQUALIFIED"}
    )
    assert r.status_code == 200

    approved = await client.post(
        "/qc/update-flag-status",
        json={"flagId": link["id"], "status": "APPROVED", "reviewedBy": "qa@example.com", "reasoning": "legit"},
    )
    assert approved.status_code == 200
    body = approved.json()["data"]
    assert body["status"] == "COMPLETED"
    assert body["manualReview"]["previousStatus"] == "PENDING"
    assert body["manualReview"]["reviewedBy"] == "qa@example.com"

    rejected = await client.post(
        "/qc/update-flag-status", json={"flagId": link["id"], "status": "REJECTED", "reviewedBy": "lead@example.com"}
    )
    body = rejected.json()["data"]
    assert body["status"] == "DISQUALIFIED"
    assert body["manualReview"]["previousStatus"] == "APPROVED"

    stored = (await listed(client, p.id))["links"][0]
    assert stored["metadata"]["manualReview"]["status"] == "REJECTED"
    assert stored["metadata"]["batchId"] == link["metadata"]["batchId"]


async def test_qc_review_errors(client, project):
    p, _ = project
    link = await one_link(client, p.id)
    bad = await client.post("/qc/update-flag-status", json={"flagId": link["id"], "status": "MAYBE", "reviewedBy": "a"})
    assert bad.status_code == 400
    missing = await client.post("/qc/update-flag-status", json={"flagId": "nope", "status": "APPROVED", "reviewedBy": "a"})
    assert missing.status_code == 404
    anon = await client.post("/qc/update-flag-status", json={"flagId": link["id"], "status": "APPROVED"})
    assert anon.status_code == 400


async def test_respondent_lifecycle_and_stats(client, project):
    p, (v1, _) = project
    links = (await generate(client, projectId=p.id, testCount=1, liveCount=2, vendorIds=[v1.id])).json()["links"]
    uid = links[1]["uid"]

    # cannot complete before the respondent starts
    early = await client.post("/links/complete", json={"projectId": p.id, "uid": uid})
    assert early.status_code == 400

    v = await client.post("/links/validate", json={"projectId": p.id, "uid": uid})
    assert v.json()["success"] is True
    assert v.json()["surveyLink"]["status"] == "IN_PROGRESS"

    done = await client.post(
        "/links/complete",
        json={"projectId": p.id, "uid": uid, "metadata": {"score": 90, "batchId": "batch_forged", "linkType": "TEST"}},
    )
    assert done.status_code == 200
    again = await client.post("/links/validate", json={"projectId": p.id, "uid": uid})
    assert again.json()["status"] == "completed"

    backwards = await client.post("/links/update-status", json={"projectId": p.id, "uid": uid, "status": "IN_PROGRESS"})
    assert backwards.status_code == 400
    invalid = await client.post("/links/update-status", json={"projectId": p.id, "uid": uid, "status": "LOST"})
    assert invalid.status_code == 400

    stats = (await client.get("/links/stats", params={"projectId": p.id})).json()
    assert stats == {
        "total": 3,
        "active": 2,
        "completed": 1,
        "testLinks": 1,
        "liveLinks": 2,
        "byVendor": {v1.id: 3},
    }

    completed = (await listed(client, p.id, status="COMPLETED"))["links"][0]
    assert completed["completedAt"]
    assert completed["metadata"]["score"] == 90
    assert completed["metadata"]["completionTimestamp"]
    assert completed["metadata"]["batchId"] == links[1]["metadata"]["batchId"]
    assert completed["metadata"]["linkType"] == "LIVE"


async def test_update_status_records_responses(client, project):
    p, _ = project
    link = await one_link(client, p.id)
    r = await client.post(
        "/links/update-status",
        json={"projectId": p.id, "uid": link["uid"], "status": "STARTED", "questionId": "q1", "answer": "yes", "metadata": {"step": 1}},
    )
    assert r.json()["updatedLink"]["status"] == "IN_PROGRESS"

    stored = (await listed(client, p.id))["links"][0]
    (entry,) = stored["metadata"]["responses"]
    assert entry["questionId"] == "q1"
    assert entry["answer"] == "yes"
    assert entry["metadata"]["previousStatus"] == "UNUSED"
    assert entry["metadata"]["step"] == 1


async def test_validate_geo_restriction(client, project):
    p, _ = project
    link = (await generate(client, projectId=p.id, count=1, geoRestriction=["US", "CA"])).json()["links"][0]

    blocked = await client.post(
        "/links/validate", json={"projectId": p.id, "uid": link["uid"]}, headers={"cf-ipcountry": "FR"}
    )
    assert blocked.json()["status"] == "geo-restricted"
    assert blocked.json()["allowedCountries"] == ["US", "CA"]

    ok = await client.post("/links/validate", json={"projectId": p.id, "uid": link["uid"]}, headers={"cf-ipcountry": "CA"})
    assert ok.json()["success"] is True


async def test_health(client):
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["database"] == "ok"
    assert resp.headers["X-Content-Type-Options"] == "nosniff"
