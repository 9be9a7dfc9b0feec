import json
import logging
import os
from typing import Dict, Optional

from .config import DRAFT_STORE_PATH
from .models import Answer

logger = logging.getLogger(__name__)

# owner used when a session is created without a student id
ANONYMOUS_STUDENT = "_anonymous"


def responses_key(assessment_id: str) -> str:
    return f"{assessment_id}:responses"


def drafts_key(assessment_id: str) -> str:
    return f"{assessment_id}:drafts"


class DraftStore:
    """
    Local, durable store for answers that have not been submitted yet.

    Layout (one JSON object on disk, one entry per student):
        "<studentId>" -> {
            "<assessmentId>:responses" -> {questionId: answer}
            "<assessmentId>:drafts"    -> {questionId: free text}
        }

    Every write goes straight to disk. A file that cannot be parsed is
    treated as empty.
    """

    def __init__(self, file_path: Optional[str] = None):
        self.file_path = file_path or DRAFT_STORE_PATH
        directory = os.path.dirname(self.file_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        if not os.path.exists(self.file_path):
            self._save({})

    def _load(self) -> Dict[str, Dict[str, Dict[str, Answer]]]:
        try:
            with open(self.file_path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return {}
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            logger.warning("Draft store %s is unreadable, starting empty: %s", self.file_path, e)
            return {}
        if not isinstance(data, dict):
            logger.warning("Draft store %s does not hold an object, starting empty", self.file_path)
            return {}
        return data

    def _save(self, data: Dict[str, Dict[str, Dict[str, Answer]]]):
        tmp_path = f"{self.file_path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False, indent=2)
        os.replace(tmp_path, self.file_path)

    def get(self, student_id: str, key: str) -> Dict[str, Answer]:
        record = self._load().get(student_id)
        value = record.get(key) if isinstance(record, dict) else None
        if not isinstance(value, dict):
            return {}
        return {
            str(k): v for k, v in value.items()
            if isinstance(v, (str, bool))
        }

    def set(self, student_id: str, key: str, value: Dict[str, Answer]):
        data = self._load()
        record = data.get(student_id)
        if not isinstance(record, dict):
            record = data[student_id] = {}
        record[key] = dict(value)
        self._save(data)

    def remove(self, student_id: str, *keys: str):
        data = self._load()
        record = data.get(student_id)
        if not isinstance(record, dict):
            return
        changed = False
        for key in keys:
            if key in record:
                del record[key]
                changed = True
        if not record:
            del data[student_id]
            changed = True
        if changed:
            self._save(data)

    # ---- per-assessment helpers ---------------------------------------------

    def load_answers(self, student_id: str, assessment_id: str):
        return (
            self.get(student_id, responses_key(assessment_id)),
            self.get(student_id, drafts_key(assessment_id)),
        )

    def save_responses(self, student_id: str, assessment_id: str, responses: Dict[str, Answer]):
        self.set(student_id, responses_key(assessment_id), responses)

    def save_drafts(self, student_id: str, assessment_id: str, drafts: Dict[str, str]):
        self.set(student_id, drafts_key(assessment_id), drafts)

    def clear(self, student_id: str, assessment_id: str):
        self.remove(student_id, responses_key(assessment_id), drafts_key(assessment_id))
