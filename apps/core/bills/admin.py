from django.contrib import admin

from .models import Bill, BillAssignment, BillPayment, StudentBill


class BillAssignmentInline(admin.TabularInline):
    model = BillAssignment
    extra = 0


@admin.register(Bill)
class BillAdmin(admin.ModelAdmin):
    list_display = ('title', 'creator', 'amount', 'due_date', 'frequency', 'status')
    list_filter = ('status', 'frequency', 'due_date')
    search_fields = ('title', 'description', 'creator__username')
    inlines = [BillAssignmentInline]


@admin.register(StudentBill)
class StudentBillAdmin(admin.ModelAdmin):
    list_display = ('bill', 'student', 'amount_due', 'paid_amount', 'is_paid', 'is_excluded')
    list_filter = ('is_paid', 'is_excluded')
    search_fields = ('bill__title', 'student__first_name', 'student__last_name')
    readonly_fields = ('amount_due', 'paid_amount', 'is_paid', 'paid_at')


@admin.register(BillPayment)
class BillPaymentAdmin(admin.ModelAdmin):
    list_display = ('paid_at', 'bill', 'student', 'account', 'amount')
    list_filter = ('paid_at',)
    search_fields = ('bill__title', 'student__first_name', 'student__last_name')

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False
