# Generated migration file for initial database schema

from django.db import migrations, models
import django.db.models.deletion
import django.utils.timezone


class Migration(migrations.Migration):

    initial = True

    dependencies = [
    ]

    operations = [
        migrations.CreateModel(
            name='Tenant',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('slug', models.SlugField(unique=True)),
                ('business_name', models.CharField(max_length=200)),
                ('business_phone', models.CharField(blank=True, max_length=20)),
                ('account_type', models.CharField(choices=[('homeowner', 'Homeowner'), ('personal', 'Personal'), ('isp', 'ISP'), ('enterprise', 'Enterprise')], default='personal', max_length=20)),
                ('commission_rate', models.DecimalField(blank=True, decimal_places=2, max_digits=5, null=True)),
                ('api_key', models.CharField(blank=True, max_length=64, unique=True)),
                ('is_active', models.BooleanField(default=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
            options={
                'ordering': ['-created_at'],
            },
        ),
        migrations.CreateModel(
            name='Router',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('name', models.CharField(max_length=100)),
                ('provider', models.CharField(choices=[('mikrotik', 'MikroTik RouterOS')], default='mikrotik', max_length=20)),
                ('host', models.CharField(max_length=255)),
                ('port', models.IntegerField(default=80)),
                ('username', models.CharField(max_length=100)),
                ('password', models.CharField(max_length=255)),
                ('use_ssl', models.BooleanField(default=False)),
                ('status', models.CharField(choices=[('online', 'Online'), ('offline', 'Offline'), ('configuring', 'Configuring'), ('error', 'Error')], default='configuring', max_length=20)),
                ('last_seen', models.DateTimeField(blank=True, null=True)),
                ('last_error', models.TextField(blank=True)),
                ('is_active', models.BooleanField(default=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('tenant', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='routers', to='billing.tenant')),
            ],
            options={
                'ordering': ['tenant', 'name'],
                'unique_together': {('tenant', 'name')},
            },
        ),
        migrations.CreateModel(
            name='Package',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('service_type', models.CharField(choices=[('hotspot', 'Hotspot'), ('pppoe', 'PPPoE')], default='hotspot', max_length=10)),
                ('name', models.CharField(max_length=100)),
                ('display_name', models.CharField(blank=True, max_length=150)),
                ('price', models.DecimalField(decimal_places=2, default=0, max_digits=10)),
                ('duration_minutes', models.PositiveIntegerField(default=0)),
                ('idle_timeout_minutes', models.PositiveIntegerField(default=0)),
                ('upload_kbps', models.PositiveIntegerField(default=0)),
                ('download_kbps', models.PositiveIntegerField(default=0)),
                ('data_limit_mb', models.PositiveIntegerField(default=0)),
                ('timed_on_purchase', models.BooleanField(default=False, help_text='Usage deadline starts at payment time (payment + duration)')),
                ('router_profile_id', models.CharField(blank=True, max_length=50, null=True)),
                ('sync_status', models.CharField(choices=[('synced', 'Synced'), ('drifted', 'Drifted'), ('new_on_router', 'New on Router'), ('not_on_router', 'Not on Router'), ('failed', 'Failed')], default='not_on_router', max_length=20)),
                ('router_snapshot', models.JSONField(blank=True, default=dict)),
                ('last_synced', models.DateTimeField(blank=True, null=True)),
                ('is_active', models.BooleanField(default=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('router', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='packages', to='billing.router')),
            ],
            options={
                'ordering': ['router', 'service_type', 'price', 'name'],
                'unique_together': {('router', 'service_type', 'name')},
            },
        ),
        migrations.CreateModel(
            name='Customer',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('phone_hash', models.CharField(db_index=True, max_length=64)),
                ('phone_number', models.CharField(blank=True, max_length=20)),
                ('total_purchases', models.PositiveIntegerField(default=0)),
                ('total_spent', models.DecimalField(decimal_places=2, default=0, max_digits=12)),
                ('last_purchase_at', models.DateTimeField(blank=True, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('tenant', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='customers', to='billing.tenant')),
            ],
            options={
                'ordering': ['-last_purchase_at'],
                'unique_together': {('tenant', 'phone_hash')},
            },
        ),
        migrations.CreateModel(
            name='Payment',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('package_name', models.CharField(max_length=100)),
                ('order_reference', models.CharField(max_length=100, unique=True)),
                ('checkout_request_id', models.CharField(blank=True, db_index=True, max_length=100)),
                ('phone_number', models.CharField(max_length=20)),
                ('mac_address', models.CharField(blank=True, max_length=17)),
                ('amount', models.DecimalField(decimal_places=2, max_digits=10)),
                ('status', models.CharField(choices=[('pending', 'Pending'), ('completed', 'Completed'), ('pending_voucher', 'Paid - Awaiting Voucher'), ('failed', 'Failed'), ('cancelled', 'Cancelled')], default='pending', max_length=20)),
                ('transaction_id', models.CharField(blank=True, max_length=100, null=True)),
                ('paid_amount', models.DecimalField(blank=True, decimal_places=2, max_digits=10, null=True)),
                ('failure_reason', models.TextField(blank=True)),
                ('metadata', models.JSONField(blank=True, default=dict)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('paid_at', models.DateTimeField(blank=True, null=True)),
                ('completed_at', models.DateTimeField(blank=True, null=True)),
                ('customer', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='payments', to='billing.customer')),
                ('router', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='payments', to='billing.router')),
                ('tenant', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='payments', to='billing.tenant')),
            ],
            options={
                'ordering': ['-created_at'],
                'indexes': [models.Index(fields=['status', 'created_at'], name='payment_status_created_idx')],
            },
        ),
        migrations.CreateModel(
            name='Voucher',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('code', models.CharField(max_length=32)),
                ('payment_reference', models.CharField(max_length=32, unique=True)),
                ('status', models.CharField(choices=[('active', 'Active'), ('assigned', 'Assigned'), ('paid', 'Paid'), ('used', 'Used'), ('expired', 'Expired'), ('cancelled', 'Cancelled')], db_index=True, default='active', max_length=20)),
                ('package_name', models.CharField(db_index=True, max_length=100)),
                ('service_type', models.CharField(default='hotspot', max_length=10)),
                ('price', models.DecimalField(decimal_places=2, max_digits=10)),
                ('duration_minutes', models.PositiveIntegerField(default=0)),
                ('upload_kbps', models.PositiveIntegerField(default=0)),
                ('download_kbps', models.PositiveIntegerField(default=0)),
                ('data_limit_mb', models.PositiveIntegerField(default=0)),
                ('router_user_id', models.CharField(blank=True, max_length=50, null=True)),
                ('router_sync_error', models.TextField(blank=True)),
                ('synced_at', models.DateTimeField(blank=True, null=True)),
                ('is_used', models.BooleanField(default=False)),
                ('device_mac', models.CharField(blank=True, max_length=17)),
                ('usage_started_at', models.DateTimeField(blank=True, null=True)),
                ('usage_ends_at', models.DateTimeField(blank=True, null=True)),
                ('data_used_mb', models.PositiveIntegerField(default=0)),
                ('time_used_minutes', models.PositiveIntegerField(default=0)),
                ('timed_on_purchase', models.BooleanField(default=False)),
                ('purchase_expires_at', models.DateTimeField(blank=True, null=True)),
                ('payment_method', models.CharField(blank=True, max_length=20)),
                ('transaction_id', models.CharField(blank=True, max_length=100, null=True, unique=True)),
                ('payer_phone', models.CharField(blank=True, max_length=64)),
                ('paid_amount', models.DecimalField(blank=True, decimal_places=2, max_digits=10, null=True)),
                ('commission', models.DecimalField(decimal_places=2, default=0, max_digits=10)),
                ('paid_at', models.DateTimeField(blank=True, null=True)),
                ('batch_id', models.CharField(blank=True, db_index=True, max_length=50)),
                ('batch_size', models.PositiveIntegerField(default=1)),
                ('generated_by', models.CharField(blank=True, max_length=100)),
                ('activation_expires_at', models.DateTimeField(blank=True, null=True)),
                ('auto_delete', models.BooleanField(default=True)),
                ('expired_at', models.DateTimeField(blank=True, null=True)),
                ('expired_by', models.CharField(blank=True, max_length=30)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('customer', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='vouchers', to='billing.customer')),
                ('package', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='vouchers', to='billing.package')),
                ('router', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='vouchers', to='billing.router')),
                ('tenant', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='vouchers', to='billing.tenant')),
            ],
            options={
                'ordering': ['-created_at'],
                'indexes': [models.Index(fields=['router', 'package_name', 'status'], name='voucher_router_pkg_status_idx'), models.Index(fields=['status', 'activation_expires_at'], name='voucher_status_activation_idx')],
                'unique_together': {('router', 'code')},
            },
        ),
        migrations.AddField(
            model_name='payment',
            name='voucher',
            field=models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='payments', to='billing.voucher'),
        ),
        migrations.CreateModel(
            name='ServiceIdentifier',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('service_type', models.CharField(max_length=10)),
                ('name', models.CharField(max_length=100)),
                ('object_id', models.CharField(max_length=50)),
                ('discovered_at', models.DateTimeField(default=django.utils.timezone.now)),
                ('router', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='service_identifiers', to='billing.router')),
            ],
            options={
                'unique_together': {('router', 'service_type', 'name')},
            },
        ),
        migrations.CreateModel(
            name='PaymentWebhook',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('received_at', models.DateTimeField(auto_now_add=True)),
                ('processed_at', models.DateTimeField(blank=True, null=True)),
                ('processing_status', models.CharField(choices=[('received', 'Received'), ('processed', 'Processed Successfully'), ('failed', 'Processing Failed'), ('ignored', 'Ignored')], default='received', max_length=20)),
                ('processing_error', models.TextField(blank=True)),
                ('outcome', models.CharField(blank=True, max_length=30)),
                ('event_type', models.CharField(choices=[('C2B_CONFIRMATION', 'C2B Confirmation'), ('STK_CALLBACK', 'STK Callback'), ('OTHER', 'Other')], default='OTHER', max_length=30)),
                ('bill_reference', models.CharField(db_index=True, max_length=100)),
                ('transaction_id', models.CharField(blank=True, db_index=True, max_length=100)),
                ('msisdn', models.CharField(blank=True, max_length=64)),
                ('amount', models.DecimalField(blank=True, decimal_places=2, max_digits=10, null=True)),
                ('raw_payload', models.JSONField()),
                ('source_ip', models.GenericIPAddressField(blank=True, null=True)),
                ('payment', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='webhook_logs', to='billing.payment')),
                ('tenant', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='payment_webhooks', to='billing.tenant')),
                ('voucher', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='webhook_logs', to='billing.voucher')),
            ],
            options={
                'ordering': ['-received_at'],
                'indexes': [models.Index(fields=['bill_reference', '-received_at'], name='webhook_billref_received_idx'), models.Index(fields=['processing_status', '-received_at'], name='webhook_status_received_idx')],
            },
        ),
        migrations.CreateModel(
            name='OperatorAlert',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('alert_type', models.CharField(choices=[('out_of_stock', 'Out of Stock'), ('sync_failure', 'Sync Failure'), ('provisioning_failure', 'Provisioning Failure')], max_length=30)),
                ('severity', models.CharField(choices=[('info', 'Info'), ('warning', 'Warning'), ('critical', 'Critical')], default='warning', max_length=10)),
                ('message', models.TextField()),
                ('metadata', models.JSONField(blank=True, default=dict)),
                ('is_acknowledged', models.BooleanField(default=False)),
                ('acknowledged_at', models.DateTimeField(blank=True, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('router', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='operator_alerts', to='billing.router')),
                ('tenant', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='operator_alerts', to='billing.tenant')),
            ],
            options={
                'ordering': ['-created_at'],
            },
        ),
        migrations.CreateModel(
            name='SMSLog',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('phone_number', models.CharField(db_index=True, max_length=20)),
                ('message', models.TextField()),
                ('sms_type', models.CharField(choices=[('voucher', 'Voucher Delivery'), ('delayed', 'Fulfilment Delayed'), ('operator_alert', 'Operator Alert'), ('other', 'Other')], default='other', max_length=20)),
                ('success', models.BooleanField(default=False)),
                ('response_data', models.JSONField(blank=True, null=True)),
                ('sent_at', models.DateTimeField(auto_now_add=True)),
                ('tenant', models.ForeignKey(null=True, on_delete=django.db.models.deletion.CASCADE, related_name='sms_logs', to='billing.tenant')),
            ],
            options={
                'ordering': ['-sent_at'],
            },
        ),
    ]
