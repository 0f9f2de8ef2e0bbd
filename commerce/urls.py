from django.urls import path

from . import views

urlpatterns = [
    path('orders/', views.create_order, name='create_order'),
    path('orders/<int:order_id>/', views.order_detail, name='order_detail'),
    path('orders/<int:order_id>/items/', views.add_order_item, name='add_order_item'),
    path('orders/<int:order_id>/cancel/', views.cancel_order, name='cancel_order'),
    path('orders/<int:order_id>/status/', views.update_order_status, name='update_order_status'),
    path('payments/', views.create_payment, name='create_payment'),
    path('payments/capture/', views.capture_payment, name='capture_payment'),
    path('payments/<str:gateway_order_id>/', views.payment_detail, name='payment_detail'),
    path('payments/<str:gateway_order_id>/cancel/', views.cancel_payment, name='cancel_payment'),
    path('webhooks/stripe/', views.stripe_webhook, name='stripe_webhook'),
    path('returns/', views.create_return, name='create_return'),
    path('returns/<int:return_id>/', views.return_detail, name='return_detail'),
    path('returns/<int:return_id>/cancel/', views.cancel_return, name='cancel_return'),
    path('otp/request/', views.request_otp, name='request_otp'),
    path('otp/verify/', views.verify_otp, name='verify_otp'),
]
