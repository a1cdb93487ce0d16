from django.urls import path
from . import views

urlpatterns = [
    path('', views.create_booking, name='create_booking'),
    path('availability/', views.check_availability, name='check_availability'),
    path('status/', views.get_booking_status, name='get_booking_status'),
    path('verification/request/', views.request_verification_code, name='request_verification_code'),
    path('verification/verify/', views.verify_email_code, name='verify_email_code'),
    path('sweep/', views.sweep_holds, name='sweep_holds'),
    path('reminders/', views.send_due_reminders, name='send_due_reminders'),
]
