"""
Layer 3 — Message composition
Default subject/body and the MIME message carrying the PDF attachment.
"""
from datetime import datetime
from email.message import EmailMessage
from email.utils import formataddr, formatdate, make_msgid

from layer2_composition import PDF_MIME_TYPE

DEFAULT_CLIENT_NAME = "Cliente"


def display_client_name(client_name) -> str:
    return " ".join((client_name or "").split()) or DEFAULT_CLIENT_NAME


def format_timestamp(now: datetime) -> str:
    """Local date and time at minute precision: YYYY-MM-DD HH:MM"""
    return now.strftime("%Y-%m-%d %H:%M")


def build_subject(client_name, now: datetime) -> str:
    return f"Cedula - {display_client_name(client_name)} - {format_timestamp(now)}"


def build_text_body(client_name, now: datetime) -> str:
    return (
        f"Se adjunta el PDF con la cedula de {display_client_name(client_name)} "
        f"capturada el {format_timestamp(now)}."
    )


def build_from_header(from_address: str, from_name: str = "") -> str:
    address = (from_address or "").strip()
    if not address:
        return ""
    name = (from_name or "").strip()
    return formataddr((name, address)) if name else address


def build_message(*, from_header, to, subject, text, document, filename, html=None) -> EmailMessage:
    """
    Build the outgoing message

    Args:
        from_header: Composed From header
        to: Destination address
        subject: Subject line
        text: Plain text body
        document: PDF bytes to attach
        filename: Attachment filename
        html: Optional HTML alternative body

    Returns:
        EmailMessage: Ready to hand to a transport
    """
    message = EmailMessage()
    message["From"] = from_header
    message["To"] = to
    message["Subject"] = subject
    message["Date"] = formatdate(localtime=True)
    message["Message-ID"] = make_msgid()

    message.set_content(text)
    if html:
        message.add_alternative(html, subtype="html")

    maintype, subtype = PDF_MIME_TYPE.split("/")
    message.add_attachment(document, maintype=maintype, subtype=subtype, filename=filename)
    return message
