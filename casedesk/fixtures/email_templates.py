"""E-mail templates for booking and payment notifications.

Placeholders use the {{name}} syntax and are filled by
NotificationService.render_template.
"""

EMAIL_TEMPLATES = {
    "consultation_hold": {
        "subject": "Complete your payment to confirm your consultation",
        "body": """Hello {{client_name}},

We are holding your consultation slot:

Date: {{date}}
Time: {{time}} UTC
Method: {{method}}

Please complete the payment of {{amount}} {{currency}} before {{hold_expiry}} UTC.
Unpaid holds are released automatically.

Kind regards,
{{company_name}}""",
    },
    "consultation_confirmed": {
        "subject": "Your consultation is confirmed",
        "body": """Hello {{client_name}},

Your payment was received and your consultation is confirmed.

Date: {{date}}
Time: {{time}} UTC
Method: {{method}}

Your invoice: {{invoice_url}}

If you can no longer attend, cancel more than 24 hours in advance for a full refund.

Kind regards,
{{company_name}}""",
    },
    "payment_failed": {
        "subject": "Your payment could not be processed",
        "body": """Hello {{client_name}},

We could not process your payment of {{amount}} {{currency}}.

You can try again before your slot hold expires, or book a new time.

Kind regards,
{{company_name}}""",
    },
    "consultation_cancelled": {
        "subject": "Your consultation has been cancelled",
        "body": """Hello {{client_name}},

Your consultation on {{date}} at {{time}} UTC has been cancelled.

Refund: {{refund_reason}}

Kind regards,
{{company_name}}""",
    },
    "consultation_rescheduled": {
        "subject": "Your consultation has been rescheduled",
        "body": """Hello {{client_name}},

Your consultation has moved to:

Date: {{date}}
Time: {{time}} UTC
Method: {{method}}

Kind regards,
{{company_name}}""",
    },
    "deposit_received": {
        "subject": "Deposit received for your application",
        "body": """Hello {{client_name}},

We have received your deposit of {{amount}} {{currency}} for your {{visa_type}} application.
We will be in touch about the documents we need from you.

Your invoice: {{invoice_url}}

Kind regards,
{{company_name}}""",
    },
    "account_setup": {
        "subject": "Set up your client account",
        "body": """Hello {{client_name}},

Thank you for your consultation. To continue with your {{visa_type}} application,
please set up your account:

{{setup_url}}

Kind regards,
{{company_name}}""",
    },
}
