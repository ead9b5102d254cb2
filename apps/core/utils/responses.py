from django.core.exceptions import ValidationError
from django.http import JsonResponse


def success_response(data=None, status=200):
    payload = {'success': True}
    if data is not None:
        payload['data'] = data
    return JsonResponse(payload, status=status)


def error_response(message, code='error', status=400, retryable=False, **extra):
    payload = {
        'success': False,
        'error': message,
        'code': code,
        'retryable': retryable,
    }
    payload.update(extra)
    return JsonResponse(payload, status=status)


def exception_response(exc: ValidationError):
    return error_response(
        '; '.join(exc.messages),
        code=getattr(exc, 'code', None) or 'invalid',
        status=getattr(exc, 'http_status', 400),
        retryable=getattr(exc, 'retryable', False),
    )


def form_error_response(form, amount_field='amount'):
    errors = {field: [str(message) for message in messages] for field, messages in form.errors.items()}
    if amount_field in form.errors:
        return error_response(
            'Amount must be a positive number with at most two decimal places.',
            code='invalid_amount',
            errors=errors,
        )
    return error_response('Please correct the submitted details.', code='invalid_input', errors=errors)
