from fastapi import APIRouter, Depends
from pydantic import BaseModel

from rollcall.security import Caller, get_caller, require_teacher
from rollcall.services import courses as course_service
from rollcall.services.sessions import list_course_sessions

router = APIRouter()


class CourseCreate(BaseModel):
    code: str
    name: str
    department: str | None = None
    semester: int | None = None
    description: str | None = None


class EnrollmentCreate(BaseModel):
    username: str


@router.post("/courses")
def create_course(payload: CourseCreate, caller: Caller = Depends(require_teacher)):
    return course_service.create_course(
        caller,
        code=payload.code,
        name=payload.name,
        department=payload.department,
        semester=payload.semester,
        description=payload.description,
    )


@router.get("/courses")
def my_courses(caller: Caller = Depends(get_caller)):
    return course_service.list_courses(caller)


@router.post("/courses/{course_id}/enrollments")
def enroll_student(course_id: int, payload: EnrollmentCreate, caller: Caller = Depends(require_teacher)):
    return course_service.enroll(caller, course_id, payload.username)


@router.get("/courses/{course_id}/sessions")
def course_sessions(course_id: int, caller: Caller = Depends(require_teacher)):
    return [s.to_dict(include_token=False) for s in list_course_sessions(course_id, caller)]
