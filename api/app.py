from __future__ import annotations
from contextlib import asynccontextmanager
from fastapi import APIRouter, Depends, FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
import logging, secrets, typing as t

from exam_core.config import MODULE_KILL_SWITCH, Settings, configure_logging
from exam_core.entitlements import (
    PlanGuardContext,
    PlanParseError,
    PlanRequirement,
    PlanTier,
    Role,
    parse_plan,
)
from exam_core.errors import (
    AuthError,
    ExamError,
    ForbiddenError,
    NotFoundError,
    ServiceUnavailableError,
    ValidationError,
)
from exam_core.notifications import EVENT_NUDGE, EVENT_PLAN_CHANGED
from exam_core.types import AttemptMode, ModuleType
from .services import Services, build_services

log = logging.getLogger(__name__)

# ---- Schemas ----
class AnswerIn(BaseModel):
    questionId: str = Field(..., min_length=1)
    value: t.Union[str, t.List[str]]

class StartReq(BaseModel):
    testSlug: str = Field(..., min_length=1)
    mode: AttemptMode = AttemptMode.PRACTICE

class AutosaveReq(BaseModel):
    attemptId: str = Field(..., min_length=1)
    elapsedSeconds: int = Field(0, ge=0)
    answers: t.List[AnswerIn] = Field(default_factory=list)

class SubmitReq(AutosaveReq):
    pass

class CriteriaIn(BaseModel):
    TR: float = Field(..., ge=0, le=9)
    CC: float = Field(..., ge=0, le=9)
    LR: float = Field(..., ge=0, le=9)
    GRA: float = Field(..., ge=0, le=9)

class SpeakingCriteriaIn(BaseModel):
    FC: float = Field(..., ge=0, le=9)
    LR: float = Field(..., ge=0, le=9)
    GRA: float = Field(..., ge=0, le=9)
    P: float = Field(..., ge=0, le=9)

class EvaluationReq(BaseModel):
    task1: CriteriaIn | None = None
    task2: CriteriaIn | None = None
    criteria: SpeakingCriteriaIn | None = None
    feedback: str | None = None

class PlanChangedReq(BaseModel):
    userId: str = Field(..., min_length=1)
    plan: str
    eventId: str | None = None

class NudgeReq(BaseModel):
    userId: str | None = None
    message: str | None = Field(None, max_length=500)


# ---- Dependencies ----
def get_services(request: Request) -> Services:
    return request.app.state.services


def current_user(
    authorization: str | None = Header(None),
    svc: Services = Depends(get_services),
) -> str | None:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return svc.profiles.resolve_session(token.strip())


def require_user(user_id: str | None = Depends(current_user)) -> str:
    if not user_id:
        raise AuthError("Not authenticated")
    return user_id


def require_plan(requirement: PlanRequirement) -> t.Callable[..., PlanGuardContext]:
    def guard(
        user_id: str | None = Depends(current_user),
        svc: Services = Depends(get_services),
    ) -> PlanGuardContext:
        return svc.gate.authorize(user_id, requirement)
    return guard


def _caller(ctx: PlanGuardContext) -> str:
    # free routes pass anonymous callers through the gate; attempts need an owner
    if not ctx.user_id:
        raise AuthError("Not authenticated")
    return ctx.user_id


def _check_secret(expected: str | None, given: str | None, what: str) -> None:
    if not expected:
        raise ServiceUnavailableError(reason=f"{what} not configured")
    if not given or not secrets.compare_digest(expected, given):
        raise AuthError("Invalid secret")


def _answer_pairs(answers: t.List[AnswerIn]) -> t.List[t.Tuple[str, t.Union[str, t.List[str]]]]:
    return [(a.questionId, a.value) for a in answers]


# ---- Module routes ----
def module_router(module: ModuleType, settings: Settings) -> APIRouter:
    requirement = PlanRequirement(
        tier=parse_plan(settings.module_tiers.get(module.value, PlanTier.FREE.value)),
        kill_switch_flag=MODULE_KILL_SWITCH.get(module.value),
    )
    if requirement.tier is PlanTier.FREE and requirement.kill_switch_flag in settings.kill_switches:
        log.warning(
            "kill switch %s has no effect: %s routes are free and skip the flag check",
            requirement.kill_switch_flag,
            module.value,
        )
    guard = require_plan(requirement)
    router = APIRouter(prefix=f"/{module.value}/attempts", tags=[module.value])

    @router.post("/start")
    def start(req: StartReq, ctx: PlanGuardContext = Depends(guard), svc: Services = Depends(get_services)):
        user_id = _caller(ctx)
        attempt, resumed = svc.lifecycle.start(ctx, user_id, module, req.testSlug, req.mode)
        return {
            "attemptId": attempt.id,
            "testId": attempt.test_id,
            "durationSeconds": attempt.duration_seconds,
            "remainingSeconds": attempt.remaining_seconds,
            "startedAt": attempt.started_at,
            "status": attempt.status.value,
            "resumed": resumed,
        }

    @router.post("/autosave")
    def autosave(req: AutosaveReq, ctx: PlanGuardContext = Depends(guard), svc: Services = Depends(get_services)):
        user_id = _caller(ctx)
        attempt = svc.attempts.load(req.attemptId, user_id)
        if attempt.module_type != module:
            raise NotFoundError("Attempt not found")
        svc.lifecycle.require_test_plan(ctx, svc.content.get(attempt.test_id))
        return svc.autosave.save(req.attemptId, user_id, req.elapsedSeconds, _answer_pairs(req.answers))

    @router.post("/submit")
    def submit(req: SubmitReq, ctx: PlanGuardContext = Depends(guard), svc: Services = Depends(get_services)):
        user_id = _caller(ctx)
        attempt = svc.lifecycle.submit(
            user_id, req.attemptId, req.elapsedSeconds, _answer_pairs(req.answers), module=module, ctx=ctx
        )
        return {
            "attemptId": attempt.id,
            "rawScore": attempt.raw_score,
            "bandScore": attempt.band_score,
            "submittedAt": attempt.submitted_at,
            "status": attempt.status.value,
        }

    return router


# ---- Shared routes ----
shared = APIRouter()

@shared.get("/")
def root():
    return {"status": "ok", "service": "exam-core-api"}

@shared.get("/health")
def health(svc: Services = Depends(get_services)):
    return {
        "status": "ok",
        "tests": svc.content.count_tests(),
        "killSwitches": sorted(svc.settings.kill_switches),
    }

@shared.get("/attempts")
def list_attempts(
    module: ModuleType | None = Query(None),
    limit: int = Query(50, ge=1, le=200),
    user_id: str = Depends(require_user),
    svc: Services = Depends(get_services),
):
    attempts = svc.attempts.list_for_user(user_id, module=module, limit=limit)
    return {"attempts": [a.to_dict() for a in attempts]}

@shared.get("/attempts/{attempt_id}")
def get_attempt(attempt_id: str, user_id: str = Depends(require_user), svc: Services = Depends(get_services)):
    attempt = svc.attempts.load(attempt_id, user_id)
    answers = svc.attempts.answers(attempt_id)
    return {
        "attempt": attempt.to_dict(),
        "answers": [
            {"questionId": a.question_id, "value": a.value, "isCorrect": a.is_correct, "updatedAt": a.updated_at}
            for a in answers
        ],
    }

@shared.post("/attempts/{attempt_id}/evaluation")
def post_evaluation(
    attempt_id: str,
    req: EvaluationReq,
    x_worker_secret: str | None = Header(None),
    svc: Services = Depends(get_services),
):
    _check_secret(svc.settings.worker_secret, x_worker_secret, "evaluation worker")
    attempt = svc.lifecycle.evaluate(attempt_id, req.model_dump(exclude_none=True))
    return {"attemptId": attempt.id, "bandScore": attempt.band_score, "evaluatedAt": attempt.evaluated_at}

@shared.post("/webhooks/plan-changed")
def plan_changed(
    req: PlanChangedReq,
    x_webhook_secret: str | None = Header(None),
    svc: Services = Depends(get_services),
):
    _check_secret(svc.settings.webhook_secret, x_webhook_secret, "plan webhook")
    try:
        tier = parse_plan(req.plan)
    except PlanParseError as exc:
        raise ValidationError("Unknown plan", plan=req.plan) from exc
    svc.profiles.set_plan(req.userId, tier.value)
    key = f"{EVENT_PLAN_CHANGED}:{req.eventId}" if req.eventId else None
    result = svc.notifier.fire(req.userId, EVENT_PLAN_CHANGED, {"plan": tier.value}, idempotency_key=key)
    log.info("plan for %s set to %s", req.userId, tier.value)
    return {"ok": True, "plan": tier.value, "notification": result.status}

@shared.get("/notifications")
def list_notifications(
    limit: int = Query(50, ge=1, le=200),
    user_id: str = Depends(require_user),
    svc: Services = Depends(get_services),
):
    events = svc.notifications.list_for_user(user_id, limit=limit)
    return {
        "notifications": [
            {"id": e.id, "eventKey": e.event_key, "payload": e.payload, "createdAt": e.created_at}
            for e in events
        ]
    }

_nudge_guard = require_plan(
    PlanRequirement(tier=PlanTier.STARTER, allow_roles=frozenset({Role.ADMIN, Role.TEACHER}))
)

@shared.post("/notifications/nudge")
def nudge(req: NudgeReq, ctx: PlanGuardContext = Depends(_nudge_guard), svc: Services = Depends(get_services)):
    sender = _caller(ctx)
    target = req.userId or sender
    if target != sender and not ctx.is_privileged:
        raise ForbiddenError("Only staff can nudge other users")
    result = svc.notifier.enqueue(target, EVENT_NUDGE, {"from": sender, "message": req.message})
    return {"status": result.status, "eventId": result.event_id, "idempotencyKey": result.idempotency_key}


# ---- Error translation ----
def _exam_error(request: Request, exc: ExamError) -> JSONResponse:
    if exc.status_code >= 500:
        log.error("%s %s failed: %s", request.method, request.url.path, exc, exc_info=exc.__cause__ or exc)
    return JSONResponse(status_code=exc.status_code, content=exc.to_body())

def _invalid_body(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = [{"loc": list(e.get("loc", ())), "msg": e.get("msg")} for e in exc.errors()]
    return JSONResponse(status_code=400, content={"error": "Invalid body", "details": details})

def _unhandled(request: Request, exc: Exception) -> JSONResponse:
    log.exception("unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": "Internal error"})


def create_app(settings: Settings | None = None, clock: t.Callable[[], t.Any] | None = None) -> FastAPI:
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.log_level)
        app.state.services = build_services(settings, clock=clock)
        yield

    app = FastAPI(title="Exam Core API", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.allowed_origins),
        allow_methods=["*"],
        allow_headers=["*"],
        allow_credentials=False,
    )
    app.add_exception_handler(ExamError, _exam_error)
    app.add_exception_handler(RequestValidationError, _invalid_body)
    app.add_exception_handler(Exception, _unhandled)

    app.include_router(shared)
    for module in ModuleType:
        app.include_router(module_router(module, settings))
    return app


app = create_app()
