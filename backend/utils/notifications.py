import os
import smtplib
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from twilio.rest import Client
import logging

logger = logging.getLogger(__name__)

# --- Email Configuration ---
SMTP_SERVER = os.getenv("SMTP_SERVER")
SMTP_PORT = int(os.getenv("SMTP_PORT", 587))
SMTP_USER = os.getenv("SMTP_USER")
SMTP_PASSWORD = os.getenv("SMTP_PASSWORD")
EMAIL_SENDER = os.getenv("EMAIL_SENDER")

# --- Twilio Configuration ---
TWILIO_ACCOUNT_SID = os.getenv("TWILIO_ACCOUNT_SID")
TWILIO_AUTH_TOKEN = os.getenv("TWILIO_AUTH_TOKEN")
TWILIO_PHONE_NUMBER = os.getenv("TWILIO_PHONE_NUMBER")

SIGNATURE = "AgroConnect Team"


def send_email(to_email: str, subject: str, body_html: str):
    """Sends an email using SMTP."""
    if not all([SMTP_SERVER, SMTP_PORT, SMTP_USER, SMTP_PASSWORD, EMAIL_SENDER]):
        logger.warning("SMTP settings are not fully configured. Cannot send email.")
        return False

    message = MIMEMultipart("alternative")
    message["Subject"] = subject
    message["From"] = EMAIL_SENDER
    message["To"] = to_email
    message.attach(MIMEText(body_html, "html"))

    try:
        with smtplib.SMTP(SMTP_SERVER, SMTP_PORT) as server:
            server.starttls()
            server.login(SMTP_USER, SMTP_PASSWORD)
            server.sendmail(EMAIL_SENDER, to_email, message.as_string())
        logger.info(f"Email sent successfully to {to_email}")
        return True
    except Exception as e:
        logger.error(f"Failed to send email to {to_email}: {e}")
        return False


def send_sms(to_phone_number: str, body: str):
    """Sends an SMS using Twilio."""
    if not all([TWILIO_ACCOUNT_SID, TWILIO_AUTH_TOKEN, TWILIO_PHONE_NUMBER]):
        logger.warning("Twilio settings are not fully configured. Cannot send SMS.")
        return False

    try:
        client = Client(TWILIO_ACCOUNT_SID, TWILIO_AUTH_TOKEN)
        message = client.messages.create(
            body=body,
            from_=TWILIO_PHONE_NUMBER,
            to=to_phone_number
        )
        logger.info(f"SMS sent successfully to {to_phone_number}, SID: {message.sid}")
        return True
    except Exception as e:
        logger.error(f"Failed to send SMS to {to_phone_number}: {e}")
        return False


def _wrap(title: str, inner_html: str) -> str:
    return f"""
    <html>
    <body>
        <h2>{title}</h2>
        <p>Hello,</p>
        {inner_html}
        <p>Best regards,<br>{SIGNATURE}</p>
    </body>
    </html>
    """


# Email Templates
def get_new_order_email(order_data: dict) -> tuple[str, str]:
    """Sent to the seller when a buyer places an order"""
    subject = f"New Order Received - Order #{str(order_data['id'])[:8]}"

    rows = "".join(
        f"<li>{item['product_title']}: {item['quantity']} {item['unit']} @ GHS {item['price']:.2f}</li>"
        for item in order_data.get("items", [])
    )
    body = _wrap("You have a new order!", f"""
        <div style="background-color: #f5f5f5; padding: 15px; border-radius: 5px;">
            <p><strong>Order ID:</strong> {order_data['id']}</p>
            <ul>{rows}</ul>
            <p><strong>Total Amount:</strong> GHS {order_data['total_amount']:.2f}</p>
            <p><strong>Deliver to:</strong> {order_data['delivery_address']}, {order_data['delivery_city']}</p>
        </div>
        <p>Please confirm the order from your dashboard.</p>
    """)

    return subject, body


def get_order_status_email(order_id: str, new_status: str) -> tuple[str, str]:
    subject = f"Order #{str(order_id)[:8]} is now {new_status.replace('_', ' ').title()}"
    body = _wrap("Order update", f"<p>Your order <strong>{order_id}</strong> status changed to <strong>{new_status}</strong>.</p>")
    return subject, body


def get_payment_received_email(order_id: str, amount: float, reference: str) -> tuple[str, str]:
    subject = f"Payment Received - Order #{str(order_id)[:8]}"
    body = _wrap("Payment received", f"""
        <p>A payment of <strong>GHS {amount:.2f}</strong> was received for order {order_id}.</p>
        <p><strong>Reference:</strong> {reference}</p>
    """)
    return subject, body


def get_password_reset_email(reset_link: str) -> tuple[str, str]:
    subject = "Reset your AgroConnect password"
    body = _wrap("Password reset", f"""
        <p>We received a request to reset your password. The link below is valid for one hour.</p>
        <p><a href="{reset_link}">Reset password</a></p>
        <p>If you did not request this, you can ignore this email.</p>
    """)
    return subject, body


def get_email_verification_email(verify_link: str) -> tuple[str, str]:
    subject = "Verify your AgroConnect email"
    body = _wrap("Welcome to AgroConnect!", f"""
        <p>Please confirm your email address to finish setting up your account.</p>
        <p><a href="{verify_link}">Verify email</a></p>
    """)
    return subject, body


# SMS Templates
def get_new_order_sms(order_id: str, total_amount: float) -> str:
    return f"New order #{str(order_id)[:8]} received - GHS {total_amount:.2f}. Open AgroConnect to confirm it. - {SIGNATURE}"


def get_order_status_sms(order_id: str, new_status: str) -> str:
    return f"Order #{str(order_id)[:8]} is now {new_status.replace('_', ' ').lower()}. - {SIGNATURE}"
