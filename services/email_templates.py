"""Builders for transactional emails; each returns (subject, text, html)."""

from html import escape


def _wrap_email_html(*, title: str, intro: str, content: str, footer: str) -> str:
    return f"""\
<!doctype html>
<html lang="en">
  <head>
    <meta charset="utf-8" />
    <title>{escape(title)}</title>
  </head>
  <body style="margin:0;padding:0;background:#f3f6f8;font-family:Arial,sans-serif;color:#0f172a;">
    <table role="presentation" width="100%" cellpadding="0" cellspacing="0" style="padding:24px 12px;">
      <tr>
        <td align="center">
          <table role="presentation" width="100%" cellpadding="0" cellspacing="0" style="max-width:620px;background:#ffffff;border-radius:14px;border:1px solid #e2e8f0;">
            <tr>
              <td style="padding:20px 24px;background:#1d4ed8;color:#ffffff;">
                <h1 style="margin:0;font-size:20px;">{escape(title)}</h1>
              </td>
            </tr>
            <tr>
              <td style="padding:24px;">
                <p style="margin:0 0 14px;font-size:15px;line-height:1.6;">{escape(intro)}</p>
                {content}
              </td>
            </tr>
            <tr>
              <td style="padding:16px 24px;background:#f8fafc;border-top:1px solid #e2e8f0;">
                <p style="margin:0;font-size:12px;color:#475569;">{escape(footer)}</p>
              </td>
            </tr>
          </table>
        </td>
      </tr>
    </table>
  </body>
</html>
"""


def _paragraph(text: str) -> str:
    return f'<p style="margin:0 0 12px;font-size:14px;color:#334155;line-height:1.6;">{escape(text)}</p>'


def build_booking_confirmation_email(name: str, booking_id: str, bus_number: str,
                                     route_name: str | None = None) -> tuple[str, str, str]:
    subject = f"Booking confirmed: bus {bus_number}"
    route_line = f"Route: {route_name}\n" if route_name else ""
    body = (
        f"Hi {name},\n\n"
        "Your seat is confirmed.\n\n"
        f"Booking: {booking_id}\n"
        f"Bus: {bus_number}\n"
        f"{route_line}\n"
        "Please show this booking id to the conductor when boarding."
    )
    content = (
        _paragraph(f"Hi {name},")
        + _paragraph(f"Booking: {booking_id}")
        + _paragraph(f"Bus: {bus_number}")
        + (_paragraph(f"Route: {route_name}") if route_name else "")
        + _paragraph("Please show this booking id to the conductor when boarding.")
    )
    html_body = _wrap_email_html(
        title="Booking confirmed",
        intro="Your seat is confirmed.",
        content=content,
        footer="This message was sent automatically.",
    )
    return subject, body, html_body


def build_password_reset_code_email(name: str, code: str, ttl_minutes: int) -> tuple[str, str, str]:
    subject = "Your password reset code"
    body = (
        f"Hi {name},\n\n"
        f"Your password reset code is {code}.\n\n"
        f"It expires in {ttl_minutes} minutes.\n\n"
        "If you did not request a reset, ignore this email."
    )
    content = (
        _paragraph(f"Hi {name},")
        + '<div style="margin:0 0 18px;padding:14px;border:1px dashed #1d4ed8;border-radius:10px;text-align:center;">'
        + f'<span style="font-size:30px;letter-spacing:7px;font-weight:700;">{escape(code)}</span>'
        + "</div>"
        + _paragraph(f"The code expires in {ttl_minutes} minutes.")
    )
    html_body = _wrap_email_html(
        title="Password reset",
        intro="Use this code to choose a new password.",
        content=content,
        footer="Never share this code with anyone.",
    )
    return subject, body, html_body


def build_discount_decision_email(name: str, discount_type: str, approved: bool,
                                  note: str | None = None) -> tuple[str, str, str]:
    verdict = "approved" if approved else "rejected"
    subject = f"Your {discount_type} discount application was {verdict}"
    lines = [f"Hi {name},", "", f"Your {discount_type} fare discount application was {verdict}."]
    if approved:
        lines.append("The discount applies to your next checkout.")
    if note:
        lines += ["", f"Reviewer note: {note}"]
    body = "\n".join(lines)

    content = _paragraph(f"Hi {name},") + _paragraph(lines[2])
    if approved:
        content += _paragraph("The discount applies to your next checkout.")
    if note:
        content += _paragraph(f"Reviewer note: {note}")
    html_body = _wrap_email_html(
        title=f"Discount {verdict}",
        intro="Your fare discount application has been reviewed.",
        content=content,
        footer="This message was sent automatically.",
    )
    return subject, body, html_body
