from fastapi import APIRouter, Depends

from rollcall.security import Caller, require_student
from rollcall.services.ledger import list_student_attendance

router = APIRouter()


@router.get("/attendance/me")
def my_attendance(course_id: int | None = None, caller: Caller = Depends(require_student)):
    return [r.to_dict() for r in list_student_attendance(caller, course_id)]
