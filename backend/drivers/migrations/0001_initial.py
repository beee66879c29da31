import django.utils.timezone
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name='DriverLocation',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('driver_id', models.CharField(max_length=128, unique=True)),
                ('latitude', models.DecimalField(decimal_places=6, max_digits=10)),
                ('longitude', models.DecimalField(decimal_places=6, max_digits=10)),
                ('is_online', models.BooleanField(default=False)),
                ('is_busy', models.BooleanField(default=False)),
                ('last_updated_at', models.DateTimeField(default=django.utils.timezone.now)),
                ('went_online_at', models.DateTimeField(blank=True, null=True)),
                ('name', models.CharField(blank=True, default='', max_length=150)),
                ('phone', models.CharField(blank=True, default='', max_length=32)),
                ('vehicle', models.CharField(blank=True, default='', max_length=150)),
                ('plate', models.CharField(blank=True, default='', max_length=32)),
                ('rating', models.DecimalField(blank=True, decimal_places=2, max_digits=3, null=True)),
            ],
            options={
                'db_table': 'driver_locations',
                'ordering': ['id'],
                'indexes': [models.Index(fields=['is_online', 'is_busy'], name='driver_eligibility_idx')],
                'constraints': [
                    models.CheckConstraint(
                        condition=models.Q(('is_busy', True), ('is_online', False), _negated=True),
                        name='driver_busy_implies_online',
                    ),
                ],
            },
        ),
    ]
