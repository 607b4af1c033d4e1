ADMIN = 'admin'
MEMBER = 'member'
ROLES = (ADMIN, MEMBER)


class EmailRolePolicy:
    """Grants the admin role to a configured set of email addresses."""

    def __init__(self, admin_emails=()):
        self.admin_emails = {e.strip().lower() for e in admin_emails if e and e.strip()}

    def __call__(self, identity):
        email = identity.get('email') if isinstance(identity, dict) else getattr(identity, 'email', identity)
        if email and email.strip().lower() in self.admin_emails:
            return ADMIN
        return MEMBER


def policy_from_config(app_config):
    return EmailRolePolicy(app_config.get('ADMIN_EMAILS', ()))
