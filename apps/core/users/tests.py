import json

from django.contrib.auth import get_user_model
from django.contrib.auth.models import AnonymousUser
from django.http import HttpResponse
from django.test import RequestFactory, TestCase

from .audit import log_audit_event
from .decorators import role_required
from .models import AuditLog


@role_required(['teacher', 'superadmin'])
def teacher_only_view(request):
    return HttpResponse('ok')


class RoleAccessTests(TestCase):
    def setUp(self):
        self.user_model = get_user_model()
        self.factory = RequestFactory()

        self.teacher = self.user_model.objects.create_user(
            username='teacher1',
            password='pass12345',
            role='teacher',
        )
        self.student = self.user_model.objects.create_user(
            username='student1',
            password='pass12345',
            role='student',
        )

    def _request(self, user=None):
        request = self.factory.get('/bills/')
        request.user = user or AnonymousUser()
        return request

    def test_teacher_is_allowed(self):
        response = teacher_only_view(self._request(self.teacher))
        self.assertEqual(response.status_code, 200)

    def test_student_is_forbidden_with_json_envelope(self):
        response = teacher_only_view(self._request(self.student))
        self.assertEqual(response.status_code, 403)
        payload = json.loads(response.content)
        self.assertEqual(payload['code'], 'forbidden')
        self.assertFalse(payload['success'])

    def test_anonymous_user_is_unauthenticated(self):
        response = teacher_only_view(self._request())
        self.assertEqual(response.status_code, 401)

    def test_superuser_role_is_forced(self):
        admin = self.user_model.objects.create_superuser('root', 'root@example.com', 'pass12345')
        self.assertEqual(admin.role, 'superadmin')

        admin.role = 'student'
        admin.save()
        admin.refresh_from_db()
        self.assertEqual(admin.role, 'superadmin')


class AuditLogTests(TestCase):
    def setUp(self):
        self.user = get_user_model().objects.create_user(
            username='audited',
            password='pass12345',
            role='teacher',
        )

    def test_login_and_logout_are_audited(self):
        self.assertTrue(self.client.login(username='audited', password='pass12345'))
        self.client.logout()
        actions = list(AuditLog.objects.filter(user=self.user).values_list('action', flat=True))
        self.assertIn('user.login', actions)
        self.assertIn('user.logout', actions)

    def test_log_audit_event_records_request_details(self):
        request = RequestFactory().post('/banking/transfer/', REMOTE_ADDR='10.0.0.7')
        request.user = self.user

        log_audit_event(request, 'banking.transfer', target=self.user, details='Moved 5.00')

        row = AuditLog.objects.get(action='banking.transfer')
        self.assertEqual(row.user, self.user)
        self.assertEqual(row.method, 'POST')
        self.assertEqual(row.path, '/banking/transfer/')
        self.assertEqual(row.ip_address, '10.0.0.7')
        self.assertEqual(row.target_model, 'User')
