from pydantic import BaseModel

class CurrentStudent(BaseModel):
    student_id: str
    token: str
    role: str = "student"
