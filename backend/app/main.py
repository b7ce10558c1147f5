from __future__ import annotations

import logging
from typing import Optional

from fastapi import (
    APIRouter,
    BackgroundTasks,
    Depends,
    FastAPI,
    HTTPException,
    Query,
    Request,
    Response,
    status,
)
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse

from backend.app.auth import AuthContext, get_auth_context, require_roles
from backend.app.models import (
    ApplicationCreateRequest,
    ApplicationRecord,
    ApplicationStatus,
    ApplicationView,
    EmailCategory,
    EmailPreferencesResponse,
    EmailPreferencesUpdateRequest,
    EmailPreferencesView,
    GateDecisionView,
    GateEvaluateRequest,
    JobAlertFrequency,
    NotificationDeliveryRecord,
    RateLimitCountsResponse,
    SendEmailRequest,
    SendEmailResponse,
    StatusUpdateRequest,
    StatusUpdateResponse,
    TransitionsResponse,
    UnsubscribeResponse,
    UserCreateRequest,
    UserCreateResponse,
    UserRole,
)
from backend.app.observability import MetricsRegistry, configure_logging, observe_request
from backend.app.persistence import MAX_DELIVERY_PAGE, SqlitePersistence
from backend.app.services.dispatch import (
    GateDecision,
    NotificationDispatchOrchestrator,
    NotificationEvent,
    StatusContext,
    status_change_event,
)
from backend.app.services.email_transport import build_transport
from backend.app.services.preferences import NotificationPreferenceGate
from backend.app.services.rate_limit import RateLimitLedger
from backend.app.services.templates import application_received_email, welcome_email
from backend.app.services.unsubscribe import (
    UnsubscribeNotAllowedError,
    UnsubscribeTokenError,
    apply_unsubscribe,
    preferences_url,
    unsubscribe_footer,
    verify_unsubscribe_token,
)
from backend.app.services.workflow import (
    IllegalTransitionError,
    UnknownStatusError,
    allowed_transitions,
    describe_transitions,
    is_terminal,
    parse_status,
)
from backend.app.settings import Settings, load_settings
from backend.app.store import InMemoryStore, StoreConflictError, StoreNotFoundError

logger = logging.getLogger("ats_notify.api")


def create_app() -> FastAPI:
    app = FastAPI(title="ATS Notification Gate API", version="0.1.0")
    configure_logging()
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    settings = load_settings()
    persistence = SqlitePersistence(settings.database_url) if settings.persistence_enabled else None
    store = InMemoryStore(persistence=persistence)
    metrics = MetricsRegistry()
    ledger = RateLimitLedger()
    transport = build_transport(settings)

    app.state.store = store
    app.state.settings = settings
    app.state.metrics = metrics
    app.state.ledger = ledger
    app.state.transport = transport
    app.state.notifications = NotificationDispatchOrchestrator(
        gate=NotificationPreferenceGate(store.get_email_preferences),
        ledger=ledger,
        transport=transport,
        marker_sink=store.mark_status_notified,
        delivery_log=store.record_delivery,
        footer_builder=build_footer_builder(store, settings),
        on_outcome=metrics.record_notification,
    )

    @app.middleware("http")
    async def observability_middleware(request: Request, call_next):
        return await observe_request(request, call_next, metrics=app.state.metrics)

    app.include_router(build_router())
    return app


def build_footer_builder(store: InMemoryStore, settings: Settings):
    def footer_for(event: NotificationEvent):
        role: Optional[UserRole] = None
        if event.user_id:
            try:
                role = store.get_user(event.user_id).role
            except StoreNotFoundError:
                logger.warning("footer_role_lookup_failed user_id=%s", event.user_id)
        return unsubscribe_footer(
            event.user_id,
            event.category,
            role=role,
            secret=settings.unsubscribe_secret,
            base_url=settings.public_base_url,
            ttl_days=settings.unsubscribe_token_ttl_days,
        )

    return footer_for


def get_store(request: Request) -> InMemoryStore:
    return request.app.state.store


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_metrics(request: Request) -> MetricsRegistry:
    return request.app.state.metrics


def get_notifications(request: Request) -> NotificationDispatchOrchestrator:
    return request.app.state.notifications


def decision_view(decision: GateDecision) -> GateDecisionView:
    return GateDecisionView(
        send=decision.send,
        reason=decision.reason,
        warnings=list(decision.warnings),
        winning_status=decision.winning_status,
    )


def application_view(application: ApplicationRecord) -> ApplicationView:
    return ApplicationView(
        application_id=application.id,
        job_id=application.job_id,
        candidate_id=application.candidate_id,
        recruiter_id=application.recruiter_id,
        status=application.status,
        last_status_email_sent_at_utc=application.last_status_email_sent_at_utc,
        last_status_notified=application.last_status_notified,
        allowed_transitions=allowed_transitions(application.status),
    )


def illegal_transition_detail(exc: IllegalTransitionError) -> dict:
    return {
        "message": str(exc),
        "from": exc.from_status.value,
        "to": exc.to_status.value,
        "allowed": [value.value for value in exc.allowed],
    }


def _load_application(store: InMemoryStore, application_id: str) -> ApplicationRecord:
    try:
        return store.get_application(application_id)
    except StoreNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc


def _ensure_application_access(application: ApplicationRecord, context: AuthContext) -> None:
    if context.is_privileged:
        return
    if context.user_id in {application.candidate_id, application.recruiter_id}:
        return
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="forbidden")


def _preference_owner(context: AuthContext, user_id: Optional[str]) -> str:
    if not user_id or user_id == context.user_id:
        return context.user_id
    if not context.is_privileged:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="forbidden")
    return user_id


def _notify_status_change(
    request: Request,
    background_tasks: BackgroundTasks,
    application: ApplicationRecord,
    new_status: ApplicationStatus,
) -> Optional[GateDecisionView]:
    store = get_store(request)
    settings = get_settings(request)
    try:
        candidate = store.get_user(application.candidate_id)
    except StoreNotFoundError:
        logger.warning(
            "status_email_skipped application_id=%s reason=candidate_not_found", application.id
        )
        return None
    event = status_change_event(
        application,
        new_status=new_status,
        candidate_email=candidate.email,
        dashboard_url=f"{settings.public_base_url}/job-seeker",
    )
    if event is None:
        return None
    try:
        decision = get_notifications(request).dispatch(event, background_tasks.add_task)
    except Exception:
        logger.exception("status_email_dispatch_failed application_id=%s", application.id)
        return None
    return decision_view(decision)


def build_router() -> APIRouter:
    router = APIRouter()

    @router.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @router.get("/health/ready")
    def readiness(request: Request) -> dict[str, str]:
        settings = get_settings(request)
        persistence = getattr(request.app.state.store, "persistence", None)
        if settings.persistence_enabled and persistence and not persistence.ping():
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="database unavailable",
            )
        return {"status": "ready"}

    @router.get("/metrics", response_class=PlainTextResponse)
    def metrics(request: Request) -> Response:
        registry = get_metrics(request)
        return PlainTextResponse(registry.to_prometheus())

    @router.post("/users", response_model=UserCreateResponse)
    def register_user(
        payload: UserCreateRequest,
        request: Request,
        background_tasks: BackgroundTasks,
    ) -> UserCreateResponse:
        store = get_store(request)
        settings = get_settings(request)
        try:
            user, _ = store.create_user(payload)
        except StoreConflictError as exc:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

        rendered = welcome_email(dashboard_url=preferences_url(settings.public_base_url, user.role))
        try:
            get_notifications(request).dispatch(
                NotificationEvent(
                    category=EmailCategory.important_transactional,
                    event_type="user_welcome",
                    to=[user.email],
                    subject=rendered.subject,
                    html=rendered.html,
                    text=rendered.text,
                    user_id=user.id,
                ),
                background_tasks.add_task,
            )
        except Exception:
            logger.exception("welcome_email_dispatch_failed user_id=%s", user.id)
        return UserCreateResponse(user_id=user.id, email=user.email, role=user.role)

    @router.get("/email-preferences", response_model=EmailPreferencesResponse)
    def get_email_preferences(
        request: Request,
        user_id: Optional[str] = None,
        context: AuthContext = Depends(get_auth_context),
    ) -> EmailPreferencesResponse:
        owner = _preference_owner(context, user_id)
        preferences = get_store(request).get_email_preferences(owner)
        if preferences is None:
            return EmailPreferencesResponse(
                preferences=EmailPreferencesView(
                    job_alerts=JobAlertFrequency.weekly,
                    application_updates=True,
                    marketing=False,
                    created_at_utc=None,
                    updated_at_utc=None,
                ),
                is_default=True,
            )
        return EmailPreferencesResponse(
            preferences=EmailPreferencesView(
                job_alerts=preferences.job_alerts,
                application_updates=preferences.application_updates,
                marketing=preferences.marketing,
                created_at_utc=preferences.created_at_utc,
                updated_at_utc=preferences.updated_at_utc,
            )
        )

    @router.patch("/email-preferences", response_model=EmailPreferencesResponse)
    def update_email_preferences(
        payload: EmailPreferencesUpdateRequest,
        request: Request,
        user_id: Optional[str] = None,
        context: AuthContext = Depends(get_auth_context),
    ) -> EmailPreferencesResponse:
        owner = _preference_owner(context, user_id)
        changes = payload.changes()
        if not changes:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=(
                    "At least one of job_alerts, application_updates, or marketing "
                    "must be provided"
                ),
            )
        updated = get_store(request).update_email_preferences(owner, changes)
        return EmailPreferencesResponse(
            preferences=EmailPreferencesView(
                job_alerts=updated.job_alerts,
                application_updates=updated.application_updates,
                marketing=updated.marketing,
                created_at_utc=updated.created_at_utc,
                updated_at_utc=updated.updated_at_utc,
            )
        )

    @router.get("/email/unsubscribe", response_model=UnsubscribeResponse)
    def unsubscribe(token: str, request: Request) -> UnsubscribeResponse:
        store = get_store(request)
        settings = get_settings(request)
        try:
            claims = verify_unsubscribe_token(token, secret=settings.unsubscribe_secret)
        except UnsubscribeTokenError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        try:
            user = store.get_user(claims.user_id)
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

        current = store.get_email_preferences(user.id)
        if current is None:
            current = store.update_email_preferences(user.id, {})
        try:
            outcome = apply_unsubscribe(current, claims.category)
        except UnsubscribeNotAllowedError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        if outcome.updated and outcome.preference_field:
            store.update_email_preferences(
                user.id,
                {outcome.preference_field: getattr(outcome.preferences, outcome.preference_field)},
            )
        return UnsubscribeResponse(
            user_id=user.id,
            category=claims.category,
            updated=outcome.updated,
            already_unsubscribed=outcome.already_unsubscribed,
            preference_field=outcome.preference_field,
            manage_preferences_url=preferences_url(settings.public_base_url, user.role),
        )

    @router.post("/applications", response_model=ApplicationView)
    def create_application(
        payload: ApplicationCreateRequest,
        request: Request,
        background_tasks: BackgroundTasks,
        context: AuthContext = Depends(require_roles("job-seeker", "admin")),
    ) -> ApplicationView:
        store = get_store(request)
        settings = get_settings(request)
        if not context.has_any("admin") and payload.candidate_id != context.user_id:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="candidates can only apply for themselves",
            )
        try:
            application = store.create_application(payload)
        except StoreConflictError as exc:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

        if application.recruiter_id:
            try:
                recruiter = store.get_user(application.recruiter_id)
                rendered = application_received_email(
                    job_title=application.job_title,
                    company=application.company,
                    dashboard_url=f"{settings.public_base_url}/dashboard/recruiter/applications/"
                    f"{application.id}",
                )
                get_notifications(request).dispatch(
                    NotificationEvent(
                        category=EmailCategory.important_transactional,
                        event_type="candidate_applied",
                        to=[recruiter.email],
                        subject=rendered.subject,
                        html=rendered.html,
                        text=rendered.text,
                        user_id=recruiter.id,
                        application_id=application.id,
                    ),
                    background_tasks.add_task,
                )
            except StoreNotFoundError:
                logger.warning(
                    "application_email_skipped application_id=%s reason=recruiter_not_found",
                    application.id,
                )
            except Exception:
                logger.exception(
                    "application_email_dispatch_failed application_id=%s", application.id
                )
        return application_view(application)

    @router.get("/applications/{application_id}", response_model=ApplicationView)
    def get_application(
        application_id: str,
        request: Request,
        context: AuthContext = Depends(get_auth_context),
    ) -> ApplicationView:
        store = get_store(request)
        application = _load_application(store, application_id)
        _ensure_application_access(application, context)
        # first look by the owning recruiter marks the application as viewed
        if (
            application.status == ApplicationStatus.applied
            and context.user_id == application.recruiter_id
            and context.has_any("recruiter")
            and not context.has_any("admin")
        ):
            try:
                application, _ = store.transition_application(
                    application.id,
                    ApplicationStatus.viewed,
                    reason="recruiter_viewed",
                    actor_id=context.user_id,
                )
            except IllegalTransitionError:
                # a concurrent status change got there first
                application = store.get_application(application.id)
        return application_view(application)

    @router.get("/applications/{application_id}/transitions", response_model=TransitionsResponse)
    def get_transitions(
        application_id: str,
        request: Request,
        context: AuthContext = Depends(get_auth_context),
    ) -> TransitionsResponse:
        application = _load_application(get_store(request), application_id)
        _ensure_application_access(application, context)
        return TransitionsResponse(
            application_id=application.id,
            status=application.status,
            terminal=is_terminal(application.status),
            allowed_transitions=allowed_transitions(application.status),
            description=describe_transitions(application.status),
        )

    @router.patch("/applications/{application_id}/status", response_model=StatusUpdateResponse)
    def update_application_status(
        application_id: str,
        payload: StatusUpdateRequest,
        request: Request,
        background_tasks: BackgroundTasks,
        context: AuthContext = Depends(require_roles("recruiter", "admin")),
    ) -> StatusUpdateResponse:
        store = get_store(request)
        application = _load_application(store, application_id)
        _ensure_application_access(application, context)
        try:
            new_status = parse_status(payload.status)
        except UnknownStatusError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        if new_status == ApplicationStatus.withdrawn:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Cannot set status to withdrawn here. Candidates use the withdraw endpoint.",
            )
        try:
            updated, from_status = store.transition_application(
                application.id, new_status, payload.reason, actor_id=context.user_id
            )
        except IllegalTransitionError as exc:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=illegal_transition_detail(exc),
            ) from exc

        status_changed = from_status != updated.status
        notification = None
        if status_changed:
            notification = _notify_status_change(request, background_tasks, updated, new_status)
        return StatusUpdateResponse(
            application_id=updated.id,
            from_status=from_status,
            status=updated.status,
            status_changed=status_changed,
            notification=notification,
        )

    @router.post("/applications/{application_id}/withdraw", response_model=StatusUpdateResponse)
    def withdraw_application(
        application_id: str,
        request: Request,
        context: AuthContext = Depends(require_roles("job-seeker", "admin")),
    ) -> StatusUpdateResponse:
        store = get_store(request)
        application = _load_application(store, application_id)
        if not context.has_any("admin") and context.user_id != application.candidate_id:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="forbidden")
        try:
            updated, from_status = store.transition_application(
                application.id,
                ApplicationStatus.withdrawn,
                reason="candidate_withdrew",
                actor_id=context.user_id,
            )
        except IllegalTransitionError as exc:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=illegal_transition_detail(exc),
            ) from exc
        return StatusUpdateResponse(
            application_id=updated.id,
            from_status=from_status,
            status=updated.status,
            status_changed=from_status != updated.status,
        )

    @router.post("/notifications/evaluate", response_model=GateDecisionView)
    def evaluate_notification(
        payload: GateEvaluateRequest,
        request: Request,
        _: AuthContext = Depends(require_roles("service", "admin")),
    ) -> GateDecisionView:
        context = None
        if payload.status_context is not None:
            context = StatusContext(
                candidate_status=payload.status_context.candidate_status,
                last_status_email_sent_at=payload.status_context.last_status_email_sent_at_utc,
                last_status_notified=payload.status_context.last_status_notified,
            )
        decision = get_notifications(request).evaluate(
            payload.user_id, payload.category, payload.event_type, context
        )
        return decision_view(decision)

    @router.post("/notifications/send", response_model=SendEmailResponse)
    def send_notification(
        payload: SendEmailRequest,
        request: Request,
        _: AuthContext = Depends(require_roles("service", "admin")),
    ) -> SendEmailResponse:
        if not payload.html and not payload.text:
            return SendEmailResponse(
                success=False, error="Either html or text content is required."
            )
        event = NotificationEvent(
            category=payload.category,
            event_type=payload.event_type,
            to=payload.to,
            subject=payload.subject,
            html=payload.html,
            text=payload.text,
            user_id=payload.user_id,
        )
        # always 200 so callers do not retry and double-send
        decision, result = get_notifications(request).send_now(event)
        if not decision.send:
            return SendEmailResponse(success=True, suppressed=True)
        if result is None or not result.success:
            return SendEmailResponse(
                success=False,
                error=result.error if result else "delivery was not attempted",
            )
        return SendEmailResponse(success=True, message_id=result.message_id)

    @router.get("/notifications/deliveries", response_model=list[NotificationDeliveryRecord])
    def list_deliveries(
        request: Request,
        user_id: Optional[str] = None,
        application_id: Optional[str] = None,
        limit: int = Query(default=100, ge=1, le=MAX_DELIVERY_PAGE),
        _: AuthContext = Depends(require_roles("service", "admin")),
    ) -> list[NotificationDeliveryRecord]:
        return get_store(request).list_deliveries(
            user_id=user_id, application_id=application_id, limit=limit
        )

    @router.get("/notifications/rate-limits/{user_id}", response_model=RateLimitCountsResponse)
    def rate_limit_counts(
        user_id: str,
        request: Request,
        _: AuthContext = Depends(require_roles("service", "admin")),
    ) -> RateLimitCountsResponse:
        counts = get_notifications(request).ledger.snapshot(user_id)
        return RateLimitCountsResponse(user_id=user_id, **counts.as_dict())

    @router.post("/notifications/rate-limits/reset")
    def reset_rate_limits(
        request: Request,
        _: AuthContext = Depends(require_roles("admin")),
    ) -> dict[str, str]:
        get_notifications(request).ledger.reset()
        logger.info("rate_limit_ledger_reset")
        return {"status": "reset"}

    return router


app = create_app()
