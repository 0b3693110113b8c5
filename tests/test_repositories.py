import json
from datetime import datetime

from levelquiz.repositories import AssessmentRepository


def test_complete_writes_only_once(db, seeded):
    repo = AssessmentRepository(db)
    assessment = repo.create(seeded.user_id, seeded.subject_id, [])
    db.commit()

    first = repo.complete(
        assessment.id,
        answers=[],
        scores=[],
        suggested_level_id=seeded.level_ids[0],
        completed_at=datetime(2026, 3, 1, 12, 0),
    )
    db.commit()
    second = repo.complete(
        assessment.id,
        answers=[{"question_id": "q1", "selected_answer": "A", "is_correct": True}],
        scores=[],
        suggested_level_id=seeded.level_ids[3],
        completed_at=datetime(2026, 3, 1, 12, 5),
    )
    db.commit()

    assert first is True
    assert second is False

    db.expire_all()
    stored = repo.get(assessment.id)
    assert stored.suggested_level_id == seeded.level_ids[0]
    assert stored.completed_at == datetime(2026, 3, 1, 12, 0)
    assert json.loads(stored.answers_json) == {"answers": []}
