import django.db.models.deletion
import django.utils.timezone
import trips.models
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name='FareSettings',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('base_fare', models.DecimalField(decimal_places=2, default=trips.models._default_base_fare, max_digits=10)),
                ('per_km_rate', models.DecimalField(decimal_places=2, default=trips.models._default_per_km_rate, max_digits=10)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
            options={
                'verbose_name_plural': 'fare settings',
                'db_table': 'fare_settings',
            },
        ),
        migrations.CreateModel(
            name='Trip',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('customer_id', models.CharField(db_index=True, max_length=128)),
                ('customer_name', models.CharField(blank=True, default='', max_length=150)),
                ('customer_phone', models.CharField(blank=True, default='', max_length=32)),
                ('pickup_latitude', models.DecimalField(decimal_places=6, max_digits=10)),
                ('pickup_longitude', models.DecimalField(decimal_places=6, max_digits=10)),
                ('pickup_address', models.TextField(blank=True, default='')),
                ('dropoffs', models.JSONField(default=list)),
                ('status', models.CharField(choices=[('requested', 'Requested'), ('driver_assigned', 'Driver Assigned'), ('accepted', 'Accepted'), ('in_progress', 'In Progress'), ('completed', 'Completed'), ('cancelled', 'Cancelled')], db_index=True, default='requested', max_length=20)),
                ('assigned_driver_id', models.CharField(blank=True, db_index=True, max_length=128, null=True)),
                ('rejected_driver_ids', models.JSONField(blank=True, default=list)),
                ('assignment_generation', models.PositiveIntegerField(default=0)),
                ('offered_at', models.DateTimeField(blank=True, null=True)),
                ('offer_expires_at', models.DateTimeField(blank=True, null=True)),
                ('driver_eta_minutes', models.PositiveIntegerField(blank=True, null=True)),
                ('driver_name', models.CharField(blank=True, default='', max_length=150)),
                ('driver_phone', models.CharField(blank=True, default='', max_length=32)),
                ('vehicle', models.CharField(blank=True, default='', max_length=150)),
                ('license_plate', models.CharField(blank=True, default='', max_length=32)),
                ('driver_rating', models.DecimalField(blank=True, decimal_places=2, max_digits=3, null=True)),
                ('distance_km', models.FloatField(blank=True, null=True)),
                ('duration_minutes', models.FloatField(blank=True, null=True)),
                ('cost', models.PositiveIntegerField(blank=True, null=True)),
                ('requested_at', models.DateTimeField(default=django.utils.timezone.now)),
                ('accepted_at', models.DateTimeField(blank=True, null=True)),
                ('started_at', models.DateTimeField(blank=True, null=True)),
                ('completed_at', models.DateTimeField(blank=True, null=True)),
                ('cancelled_at', models.DateTimeField(blank=True, null=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('cancelled_by', models.CharField(blank=True, default='', max_length=128)),
                ('cancellation_reason', models.TextField(blank=True, default='')),
                ('event_sequence', models.PositiveIntegerField(default=0)),
            ],
            options={
                'db_table': 'trips',
                'ordering': ['-requested_at', '-id'],
            },
        ),
        migrations.CreateModel(
            name='TripEvent',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('sequence', models.PositiveIntegerField()),
                ('kind', models.CharField(choices=[('created', 'Created'), ('driver_proposed', 'Driver Proposed'), ('driver_accepted', 'Driver Accepted'), ('driver_rejected', 'Driver Rejected'), ('offer_expired', 'Offer Expired'), ('trip_started', 'Trip Started'), ('trip_completed', 'Trip Completed'), ('trip_cancelled', 'Trip Cancelled'), ('no_drivers_available', 'No Drivers Available'), ('route_quoted', 'Route Quoted')], max_length=32)),
                ('old_status', models.CharField(blank=True, default='', max_length=20)),
                ('new_status', models.CharField(max_length=20)),
                ('driver_id', models.CharField(blank=True, max_length=128, null=True)),
                ('payload', models.JSONField(blank=True, default=dict)),
                ('created_at', models.DateTimeField(default=django.utils.timezone.now)),
                ('trip', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='events', to='trips.trip')),
            ],
            options={
                'db_table': 'trip_events',
                'ordering': ['sequence', 'id'],
                'constraints': [models.UniqueConstraint(fields=('trip', 'sequence'), name='unique_trip_event_sequence')],
            },
        ),
    ]
