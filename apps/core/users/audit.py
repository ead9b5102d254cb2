import logging

from django.db import DatabaseError, transaction

from apps.core.users.models import AuditLog


logger = logging.getLogger('classbank.audit')


def _extract_ip(request):
    forwarded_for = request.META.get('HTTP_X_FORWARDED_FOR', '')
    if forwarded_for:
        return forwarded_for.split(',')[0].strip()
    return request.META.get('REMOTE_ADDR') or None


def log_audit_event(request, action, target=None, details='', user=None):
    target_model = ''
    target_id = ''
    if target is not None:
        target_model = target.__class__.__name__
        target_id = str(getattr(target, 'pk', ''))

    if user is None:
        user = getattr(request, 'user', None)
    if user is not None and not user.is_authenticated:
        user = None

    try:
        # Savepoint so a failed audit row never poisons the caller's transaction.
        with transaction.atomic():
            AuditLog.objects.create(
                user=user,
                action=action,
                target_model=target_model,
                target_id=target_id,
                details=details,
                method=(request.method or '')[:10],
                path=(request.path or '')[:255],
                ip_address=_extract_ip(request),
            )
    except DatabaseError:
        # Audit failures must never break business actions.
        logger.exception('Could not record audit event %s', action)
        return

    logger.info('%s by %s on %s %s', action, getattr(user, 'username', 'system'), target_model, target_id)
