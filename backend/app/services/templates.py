from __future__ import annotations

from dataclasses import dataclass
from html import escape

from backend.app.models import ApplicationStatus

STATUS_LABELS = {
    ApplicationStatus.contacted: "Contacted",
    ApplicationStatus.interviewing: "Interviewing",
    ApplicationStatus.offered: "Offer Extended",
    ApplicationStatus.rejected: "Not Selected",
}

STATUS_MESSAGES = {
    ApplicationStatus.contacted: (
        "The recruiter has reached out regarding your application. "
        "They may contact you directly to discuss next steps."
    ),
    ApplicationStatus.interviewing: (
        "Your application has progressed to the interview stage. "
        "The recruiter will contact you with details about the interview process."
    ),
    ApplicationStatus.offered: (
        "An offer has been extended for this position. "
        "The recruiter will contact you with details about the offer."
    ),
    ApplicationStatus.rejected: (
        "Thank you for your interest in this position. While this opportunity didn't "
        "work out, we encourage you to keep exploring other positions."
    ),
}


@dataclass(frozen=True)
class RenderedEmail:
    subject: str
    html: str
    text: str


def status_changed_email(
    *,
    status: ApplicationStatus,
    job_title: str,
    company: str,
    dashboard_url: str,
) -> RenderedEmail:
    label = STATUS_LABELS.get(status, status.value.title())
    message = STATUS_MESSAGES.get(status, "")
    subject = f"Application Update: {label} - {job_title}"
    html = (
        "<div>"
        "<h2>Application Status Update</h2>"
        "<p>The status of your application has been updated.</p>"
        f"<p><strong>Position:</strong> {escape(job_title)}<br />"
        f"<strong>Company:</strong> {escape(company)}</p>"
        f"<p><strong>Status: {escape(label)}</strong></p>"
        f"<p>{escape(message)}</p>"
        f'<p><a href="{escape(dashboard_url)}">View My Applications</a></p>'
        "</div>"
    )
    text = (
        "Application Status Update\n\n"
        f"Position: {job_title}\nCompany: {company}\n"
        f"Status: {label}\n\n{message}\n\n"
        f"View your applications: {dashboard_url}"
    )
    return RenderedEmail(subject=subject, html=html, text=text)


def application_received_email(
    *,
    job_title: str,
    company: str,
    dashboard_url: str,
) -> RenderedEmail:
    subject = f"New Application: {job_title}"
    html = (
        "<div>"
        "<h2>New Application Received</h2>"
        f"<p>A candidate has applied for <strong>{escape(job_title)}</strong> "
        f"at {escape(company)}.</p>"
        f'<p><a href="{escape(dashboard_url)}">Review the application</a></p>'
        "</div>"
    )
    text = (
        "New Application Received\n\n"
        f"A candidate has applied for {job_title} at {company}.\n\n"
        f"Review the application: {dashboard_url}"
    )
    return RenderedEmail(subject=subject, html=html, text=text)


def welcome_email(*, dashboard_url: str) -> RenderedEmail:
    return RenderedEmail(
        subject="Welcome aboard",
        html=(
            "<div><h2>Welcome!</h2>"
            "<p>Your account is ready. You can manage your email preferences at any time.</p>"
            f'<p><a href="{escape(dashboard_url)}">Go to your dashboard</a></p></div>'
        ),
        text=(
            "Welcome!\n\nYour account is ready. You can manage your email preferences "
            f"at any time.\n\nGo to your dashboard: {dashboard_url}"
        ),
    )
