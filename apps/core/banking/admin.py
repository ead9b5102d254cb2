from django.contrib import admin

from .models import BankAccount, BankStatement, BankTransaction, RecurringAdjustment


class ReadOnlyLedgerAdmin(admin.ModelAdmin):
    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(BankAccount)
class BankAccountAdmin(ReadOnlyLedgerAdmin):
    list_display = ('display_account_number', 'student', 'account_type', 'balance', 'updated_at')
    list_filter = ('account_type',)
    search_fields = ('account_number', 'student__first_name', 'student__last_name', 'student__school_email')


@admin.register(BankTransaction)
class BankTransactionAdmin(ReadOnlyLedgerAdmin):
    list_display = ('created_at', 'account', 'transaction_type', 'amount', 'balance_after', 'created_by')
    list_filter = ('transaction_type', 'created_at')
    search_fields = ('description', 'account__account_number')
    raw_id_fields = ('account', 'related_transaction', 'created_by')


@admin.register(BankStatement)
class BankStatementAdmin(ReadOnlyLedgerAdmin):
    list_display = ('account', 'year', 'month', 'opening_balance', 'closing_balance', 'transaction_count')
    list_filter = ('year', 'month')
    search_fields = ('account__account_number',)


@admin.register(RecurringAdjustment)
class RecurringAdjustmentAdmin(admin.ModelAdmin):
    list_display = ('student', 'direction', 'amount', 'account_type', 'recurrence', 'next_run', 'is_active')
    list_filter = ('recurrence', 'direction', 'is_active')
    search_fields = ('student__first_name', 'student__last_name', 'description')
    raw_id_fields = ('student', 'created_by')
    readonly_fields = ('occurrences', 'last_run_at', 'last_error', 'stopped_at')
