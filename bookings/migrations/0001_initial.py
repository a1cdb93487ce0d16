import uuid

import django.db.models.deletion
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name='Booking',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('customer_name', models.CharField(max_length=100)),
                ('customer_email', models.EmailField(db_index=True, max_length=255)),
                ('customer_phone', models.CharField(max_length=15)),
                ('notes', models.TextField(blank=True)),
                ('event_date', models.DateField(db_index=True)),
                ('start_time', models.CharField(max_length=5)),
                ('end_time', models.CharField(max_length=5)),
                ('venue_name', models.CharField(blank=True, max_length=200)),
                ('street_address', models.CharField(blank=True, max_length=200)),
                ('city', models.CharField(blank=True, max_length=100)),
                ('state', models.CharField(blank=True, max_length=2)),
                ('zip_code', models.CharField(blank=True, max_length=5)),
                ('event_type', models.CharField(default='DJ Service', max_length=100)),
                ('package_type', models.CharField(max_length=50)),
                ('service_tier', models.CharField(max_length=100)),
                ('selected_add_ons', models.JSONField(blank=True, default=list)),
                ('total_amount', models.PositiveIntegerField()),
                ('deposit_amount', models.PositiveIntegerField()),
                ('status', models.CharField(
                    choices=[
                        ('pending', 'Pending'),
                        ('confirmed', 'Confirmed'),
                        ('expired', 'Expired'),
                        ('cancelled', 'Cancelled'),
                        ('payment_failed', 'Payment Failed'),
                    ],
                    db_index=True, default='pending', max_length=20,
                )),
                ('version', models.PositiveIntegerField(default=1)),
                ('stripe_session_id', models.CharField(blank=True, db_index=True, max_length=255, null=True)),
                ('stripe_payment_intent', models.CharField(blank=True, db_index=True, max_length=255, null=True)),
                ('google_calendar_event_id', models.CharField(blank=True, max_length=255, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True, db_index=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('confirmed_at', models.DateTimeField(blank=True, null=True)),
                ('reminder_sent_at', models.DateTimeField(blank=True, null=True)),
                ('expired_at', models.DateTimeField(blank=True, null=True)),
                ('cancelled_at', models.DateTimeField(blank=True, null=True)),
            ],
            options={
                'db_table': 'bookings_booking',
                'ordering': ['-created_at'],
            },
        ),
        migrations.CreateModel(
            name='BookingRateLimit',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('email', models.EmailField(blank=True, db_index=True, max_length=255, null=True)),
                ('ip_hash', models.CharField(blank=True, db_index=True, max_length=64, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True, db_index=True)),
            ],
            options={
                'db_table': 'bookings_ratelimit',
                'ordering': ['-created_at'],
            },
        ),
        migrations.CreateModel(
            name='EmailVerification',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('email', models.EmailField(db_index=True, max_length=255)),
                ('code', models.CharField(max_length=6)),
                ('created_at', models.DateTimeField(auto_now_add=True, db_index=True)),
                ('expires_at', models.DateTimeField()),
                ('verified_at', models.DateTimeField(blank=True, null=True)),
                ('used_at', models.DateTimeField(blank=True, null=True)),
            ],
            options={
                'db_table': 'bookings_emailverification',
                'ordering': ['-created_at'],
            },
        ),
        migrations.CreateModel(
            name='Reminder',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('reminder_type', models.CharField(
                    choices=[
                        ('72h_before', '72 hours before'),
                        ('24h_before', '24 hours before'),
                        ('day_of', 'Day of event'),
                    ],
                    max_length=20,
                )),
                ('scheduled_for', models.DateTimeField(db_index=True)),
                ('status', models.CharField(
                    choices=[('pending', 'Pending'), ('sent', 'Sent'), ('failed', 'Failed')],
                    db_index=True, default='pending', max_length=10,
                )),
                ('sent_at', models.DateTimeField(blank=True, null=True)),
                ('error_message', models.TextField(blank=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('booking', models.ForeignKey(
                    on_delete=django.db.models.deletion.PROTECT,
                    related_name='reminders',
                    to='bookings.booking',
                )),
            ],
            options={
                'db_table': 'bookings_reminder',
                'ordering': ['scheduled_for'],
            },
        ),
        migrations.AddConstraint(
            model_name='booking',
            constraint=models.CheckConstraint(
                condition=models.Q(deposit_amount__lte=models.F('total_amount')),
                name='booking_deposit_not_above_total',
            ),
        ),
        migrations.AddConstraint(
            model_name='booking',
            constraint=models.UniqueConstraint(
                condition=models.Q(status__in=('pending', 'payment_failed', 'confirmed')),
                fields=('event_date',),
                name='booking_one_active_per_date',
            ),
        ),
        migrations.AddConstraint(
            model_name='reminder',
            constraint=models.UniqueConstraint(
                fields=('booking', 'reminder_type'),
                name='reminder_once_per_type',
            ),
        ),
    ]
