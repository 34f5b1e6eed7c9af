"""Email template rendering.

Templates are short and kept inline; placeholders use {{name}} and are HTML-escaped in the html body.
"""

from __future__ import annotations

import html
import re
from dataclasses import dataclass
from typing import Any

_PLACEHOLDER_RE = re.compile(r"\{\{\s*([a-zA-Z0-9_]+)\s*\}\}")


@dataclass(frozen=True)
class NotificationTemplate:
  template_id: str
  subject_template: str
  text_template: str
  required_placeholders: frozenset[str]


TEMPLATES: dict[str, NotificationTemplate] = {
  "course_complete_v1": NotificationTemplate(
    template_id="course_complete_v1",
    subject_template="Your course is ready",
    text_template="{{greeting}}\n\nAll {{lesson_count}} lessons of your course have been generated.\n\nOpen it here: {{link}}\n",
    required_placeholders=frozenset({"greeting", "lesson_count", "link"}),
  ),
  "course_failed_v1": NotificationTemplate(
    template_id="course_failed_v1",
    subject_template="Your course finished with errors",
    text_template="{{greeting}}\n\nYour course finished generating, but {{error}}.\n\nReview it and regenerate the missing lessons here: {{link}}\n",
    required_placeholders=frozenset({"greeting", "error", "link"}),
  ),
  "outline_ready_v1": NotificationTemplate(
    template_id="outline_ready_v1", subject_template="Your course outline is ready", text_template="{{greeting}}\n\nThe outline you requested is ready for review: {{link}}\n", required_placeholders=frozenset({"greeting", "link"})
  ),
  "lesson_ready_v1": NotificationTemplate(
    template_id="lesson_ready_v1", subject_template="Your lesson is ready", text_template="{{greeting}}\n\nThe lesson you requested has been generated: {{link}}\n", required_placeholders=frozenset({"greeting", "link"})
  ),
  "ingestion_complete_v1": NotificationTemplate(
    template_id="ingestion_complete_v1",
    subject_template="Your document has been processed",
    text_template="{{greeting}}\n\nYour document was processed into {{chunk_count}} sections and is ready to use: {{link}}\n",
    required_placeholders=frozenset({"greeting", "chunk_count", "link"}),
  ),
  "welcome_v1": NotificationTemplate(
    template_id="welcome_v1",
    subject_template="Welcome to Authorly",
    text_template="{{greeting}}\n\nYour workspace for {{company_name}} is ready. Sign in with the password you chose at signup: {{link}}\n",
    required_placeholders=frozenset({"greeting", "company_name", "link"}),
  ),
  "ops_provisioning_delayed_v1": NotificationTemplate(
    template_id="ops_provisioning_delayed_v1",
    subject_template="[WARNING] Authorly Provisioning Delayed",
    text_template="{{count}} paid signup(s) have waited more than {{threshold_minutes}} minutes for provisioning.\n\n{{details}}\n",
    required_placeholders=frozenset({"count", "threshold_minutes", "details"}),
  ),
  "ops_orphaned_payments_v1": NotificationTemplate(
    template_id="ops_orphaned_payments_v1",
    subject_template="[CRITICAL] Authorly Orphaned Payments",
    text_template="{{count}} paid signup(s) or job(s) have been stuck for more than {{threshold_minutes}} minutes and need manual attention.\n\n{{details}}\n",
    required_placeholders=frozenset({"count", "threshold_minutes", "details"}),
  ),
}


def render_email_template(*, template_id: str, placeholders: dict[str, Any]) -> tuple[str, str, str]:
  """Render subject/text/html for a template id using escaped placeholders."""
  template = _get_template(template_id)
  missing = sorted(template.required_placeholders - set(placeholders.keys()))
  if missing:
    raise ValueError(f"Missing placeholders for template '{template.template_id}': {', '.join(missing)}")

  subject = _render_text(template.subject_template, placeholders=placeholders, escape_html=False)
  text_payload = _render_text(template.text_template, placeholders=placeholders, escape_html=False)
  paragraphs = _render_text(template.text_template, placeholders=placeholders, escape_html=True).strip().split("\n\n")
  html_payload = "".join(f"<p>{paragraph.replace(chr(10), '<br>')}</p>" for paragraph in paragraphs)
  return subject, text_payload, html_payload


def _render_text(raw_template: str, *, placeholders: dict[str, Any], escape_html: bool) -> str:
  def _replace(match: re.Match[str]) -> str:
    value = placeholders.get(match.group(1), "")
    rendered = str(value) if value is not None else ""
    if escape_html:
      return html.escape(rendered, quote=True)
    return rendered

  return _PLACEHOLDER_RE.sub(_replace, raw_template)


def _get_template(template_id: str) -> NotificationTemplate:
  template = TEMPLATES.get(template_id)
  if template is None:
    raise ValueError(f"Unknown notification template: {template_id}")
  return template
