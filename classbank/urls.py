from django.contrib import admin
from django.urls import include, path

urlpatterns = [
    path('admin/', admin.site.urls),

    path('banking/', include('apps.core.banking.urls')),
    path('bills/', include('apps.core.bills.urls')),
]
