# /mya_recovery/config/strings.py

# Default message bodies and fixed texts used by the recovery pipeline.
# Placeholders use the {{variable}} syntax understood by template_service.

DEFAULT_USER_NAME = "Cliente"
DEFAULT_PLAN_NAME = "Plano"
CURRENCY_PREFIX = "R$"
FREQUENCY_MONTHLY_LABEL = "mês"
FREQUENCY_YEARLY_LABEL = "ano"

TEMPLATE_NAME_FORMAT = "Tentativa {attempt}"

OFFER_LABEL = "Oferta especial"
LAST_CHANCE_LABEL = "ÚLTIMA CHANCE"

# Greetings are substituted as format values, so their placeholders stay unescaped
WHATSAPP_GREETING = "Olá {{user_name}}! 👋"
EMAIL_GREETING = "Olá {{user_name}},"

RECOVERY_MESSAGE_TEMPLATE = """{greeting}

Notamos que você estava interessado no plano {{{{plan_name}}}} por {{{{amount}}}}/{{{{frequency}}}}, mas não finalizou sua assinatura.

{urgency}: {discount}% de desconto!

💰 Valor original: {{{{original_amount}}}}
🎉 Com desconto: {{{{discount_amount}}}}

Clique aqui para finalizar: {{{{checkout_url}}}}

Atenciosamente,
Equipe MYA"""

# Schedule / outcome notes stored in error_message for benign skips
NOTE_SESSION_NOT_ACTIVE = "Session no longer active"
NOTE_SESSION_NOT_ABANDONED = "Session no longer abandoned"
NOTE_RECOVERY_DISABLED = "Recovery disabled"
NOTE_MAX_ATTEMPTS_REACHED = "Max attempts reached"

ERROR_SESSION_NOT_FOUND = "Cart session not found"
ERROR_GATEWAY_NOT_CONFIGURED = "Evolution API not configured"
ERROR_MISSING_WHATSAPP = "Missing WhatsApp number"
ERROR_STUCK_PROCESSING = "Exceeded processing timeout too many times"
