from datetime import timedelta
from unittest.mock import patch

from django.core.management import call_command
from django.test import TestCase, override_settings
from django.utils import timezone
from rest_framework.test import APIClient, APIRequestFactory, force_authenticate
from rest_framework_simplejwt.models import TokenUser
from rest_framework_simplejwt.tokens import AccessToken

from common.exceptions import InvalidTransition
from common.utils.geo import Position
from drivers import services as driver_sessions
from services import matching, trip_management

from .models import Trip, TripEvent, TripEventKind, TripStatus
from .state_machine import TRANSITION_EVENTS, TripStateMachine
from .tasks import expire_trip_offer_task
from .views import accept_trip, reject_trip

PICKUP = {'latitude': 6.9271, 'longitude': 79.8612, 'address': 'Colombo Fort'}
DROPOFF = {'latitude': 6.9350, 'longitude': 79.8700, 'address': 'Slave Island'}

# The only legal edges of the trip lifecycle
LEGAL = {
	(TripStatus.REQUESTED, TripEventKind.DRIVER_PROPOSED): TripStatus.DRIVER_ASSIGNED,
	(TripStatus.DRIVER_ASSIGNED, TripEventKind.DRIVER_ACCEPTED): TripStatus.ACCEPTED,
	(TripStatus.DRIVER_ASSIGNED, TripEventKind.DRIVER_REJECTED): TripStatus.REQUESTED,
	(TripStatus.DRIVER_ASSIGNED, TripEventKind.OFFER_EXPIRED): TripStatus.REQUESTED,
	(TripStatus.ACCEPTED, TripEventKind.TRIP_STARTED): TripStatus.IN_PROGRESS,
	(TripStatus.IN_PROGRESS, TripEventKind.TRIP_COMPLETED): TripStatus.COMPLETED,
	(TripStatus.REQUESTED, TripEventKind.TRIP_CANCELLED): TripStatus.CANCELLED,
	(TripStatus.DRIVER_ASSIGNED, TripEventKind.TRIP_CANCELLED): TripStatus.CANCELLED,
}


def token_user(user_id, role):
	token = AccessToken()
	token['user_id'] = user_id
	token['role'] = role
	return TokenUser(token)


def make_trip(status=TripStatus.REQUESTED, driver_id=None, customer_id='c1'):
	return Trip.objects.create(
		customer_id=customer_id,
		pickup_latitude=PICKUP['latitude'],
		pickup_longitude=PICKUP['longitude'],
		dropoffs=[DROPOFF],
		status=status,
		assigned_driver_id=driver_id,
	)


class TripStateMachineTests(TestCase):
	def test_every_state_event_pair(self):
		for status in TripStatus.values:
			for event in TRANSITION_EVENTS:
				with self.subTest(status=status, event=event):
					# One customer per trip: a customer may hold only one active trip
					trip = make_trip(status=status, driver_id='d1', customer_id='c-%s-%s' % (status, event))
					machine = TripStateMachine(trip)

					if (status, event) in LEGAL:
						machine.fire(event, driver_id='d1')
						trip.refresh_from_db()
						self.assertEqual(trip.status, LEGAL[(status, event)])
					else:
						with self.assertRaises(InvalidTransition):
							machine.fire(event, driver_id='d1')
						trip.refresh_from_db()
						self.assertEqual(trip.status, status)
						self.assertFalse(trip.events.exists())

	def test_terminal_trips_accept_no_event(self):
		for status in (TripStatus.COMPLETED, TripStatus.CANCELLED):
			trip = make_trip(status=status, driver_id='d1')
			for event in TRANSITION_EVENTS:
				with self.assertRaises(InvalidTransition):
					TripStateMachine(trip).fire(event, driver_id='d1')
			trip.refresh_from_db()
			self.assertEqual(trip.status, status)

	def test_timestamps_follow_the_happy_path(self):
		trip = TripStateMachine.create(
			customer_id='c1',
			pickup_latitude=PICKUP['latitude'],
			pickup_longitude=PICKUP['longitude'],
			dropoffs=[DROPOFF],
		)
		machine = TripStateMachine(trip)

		self.assertIsNotNone(trip.requested_at)
		self.assertIsNone(trip.accepted_at)

		machine.fire(TripEventKind.DRIVER_PROPOSED, driver_id='d1')
		machine.fire(TripEventKind.DRIVER_ACCEPTED)
		self.assertIsNone(trip.started_at)
		machine.fire(TripEventKind.TRIP_STARTED)
		machine.fire(TripEventKind.TRIP_COMPLETED)

		trip.refresh_from_db()
		self.assertLessEqual(trip.requested_at, trip.accepted_at)
		self.assertLessEqual(trip.accepted_at, trip.started_at)
		self.assertLessEqual(trip.started_at, trip.completed_at)

	def test_events_are_numbered_in_order(self):
		trip = TripStateMachine.create(
			customer_id='c1',
			pickup_latitude=PICKUP['latitude'],
			pickup_longitude=PICKUP['longitude'],
			dropoffs=[DROPOFF],
		)
		machine = TripStateMachine(trip)
		machine.fire(TripEventKind.DRIVER_PROPOSED, driver_id='d1')
		machine.fire(TripEventKind.DRIVER_REJECTED)
		machine.notice(TripEventKind.NO_DRIVERS_AVAILABLE)

		events = list(trip.events.values_list('sequence', 'kind', 'old_status', 'new_status', 'driver_id'))
		self.assertEqual(events, [
			(1, 'created', '', 'requested', None),
			(2, 'driver_proposed', 'requested', 'driver_assigned', 'd1'),
			(3, 'driver_rejected', 'driver_assigned', 'requested', 'd1'),
			(4, 'no_drivers_available', 'requested', 'requested', None),
		])
		trip.refresh_from_db()
		self.assertEqual(trip.rejected_driver_ids, ['d1'])
		self.assertIsNone(trip.assigned_driver_id)
		self.assertEqual(trip.assignment_generation, 1)

	@patch('trips.state_machine.notify_trip_event')
	def test_each_transition_is_published(self, mock_notify):
		trip = make_trip()
		TripStateMachine(trip).fire(TripEventKind.TRIP_CANCELLED)

		mock_notify.assert_called_once()
		published_trip, published_event = mock_notify.call_args.args
		self.assertEqual(published_trip.status, TripStatus.CANCELLED)
		self.assertEqual(published_event.old_status, TripStatus.REQUESTED)

	def test_notice_refuses_transition_events(self):
		with self.assertRaises(ValueError):
			TripStateMachine(make_trip()).notice(TripEventKind.TRIP_CANCELLED)

	def test_notice_saves_pending_trip_changes(self):
		trip = make_trip()
		trip.distance_km = 2.5
		trip.cost = 675
		trip.dropoffs = [DROPOFF, DROPOFF]

		TripStateMachine(trip).notice(TripEventKind.ROUTE_QUOTED, payload={'cost': 675})

		stored = Trip.objects.get(pk=trip.pk)
		self.assertEqual(stored.distance_km, 2.5)
		self.assertEqual(stored.cost, 675)
		self.assertEqual(len(stored.dropoffs), 2)
		self.assertEqual(stored.event_sequence, 1)


class TripOfferFlowTests(TestCase):
	def setUp(self):
		self.factory = APIRequestFactory()
		driver_sessions.go_online('d1', Position(6.9275, 79.8615), metadata={'name': 'Nimal', 'plate': 'WP-1001'})
		driver_sessions.go_online('d2', Position(6.9300, 79.8650), metadata={'name': 'Kamal', 'plate': 'WP-1002'})

		self.trip = trip_management.create_trip('c1', PICKUP, [DROPOFF], auto_dispatch=False).trip
		matching.dispatch(self.trip.id)
		self.trip.refresh_from_db()

	def test_accept_trip_copies_driver_details(self):
		request = self.factory.post('/api/trips/%d/accept/' % self.trip.id)
		force_authenticate(request, user=token_user('d1', 'driver'))
		response = accept_trip(request, trip_id=self.trip.id)

		self.assertEqual(response.status_code, 200)

		self.trip.refresh_from_db()
		self.assertEqual(self.trip.status, TripStatus.ACCEPTED)
		self.assertEqual(self.trip.driver_name, 'Nimal')
		self.assertEqual(self.trip.license_plate, 'WP-1001')
		self.assertEqual(response.data['trip']['driver']['plate'], 'WP-1001')

	def test_accept_by_other_driver_is_stale(self):
		request = self.factory.post('/api/trips/%d/accept/' % self.trip.id)
		force_authenticate(request, user=token_user('d2', 'driver'))
		response = accept_trip(request, trip_id=self.trip.id)

		self.assertEqual(response.status_code, 409)
		self.assertEqual(response.data['error'], 'ride_no_longer_available')

		self.trip.refresh_from_db()
		self.assertEqual(self.trip.status, TripStatus.DRIVER_ASSIGNED)
		self.assertEqual(self.trip.assigned_driver_id, 'd1')

	def test_reject_offer_triggers_next_driver(self):
		request = self.factory.post('/api/trips/%d/reject/' % self.trip.id)
		force_authenticate(request, user=token_user('d1', 'driver'))
		response = reject_trip(request, trip_id=self.trip.id)

		self.assertEqual(response.status_code, 200)
		self.assertTrue(response.data['queued_next_driver'])

		self.trip.refresh_from_db()
		self.assertEqual(self.trip.status, TripStatus.DRIVER_ASSIGNED)
		self.assertEqual(self.trip.assigned_driver_id, 'd2')
		self.assertEqual(self.trip.rejected_driver_ids, ['d1'])

	def test_customer_cannot_accept(self):
		request = self.factory.post('/api/trips/%d/accept/' % self.trip.id)
		force_authenticate(request, user=token_user('c1', 'customer'))
		response = accept_trip(request, trip_id=self.trip.id)

		self.assertEqual(response.status_code, 403)

	def test_process_offer_timeouts_expires_and_dispatches(self):
		Trip.objects.filter(pk=self.trip.pk).update(offer_expires_at=timezone.now() - timedelta(seconds=1))

		call_command('process_offer_timeouts')

		self.trip.refresh_from_db()
		self.assertEqual(self.trip.status, TripStatus.DRIVER_ASSIGNED)
		self.assertEqual(self.trip.assigned_driver_id, 'd2')
		self.assertIn(TripEventKind.OFFER_EXPIRED, self.trip.events.values_list('kind', flat=True))

	def test_expiry_task_ignores_old_generation(self):
		self.assertFalse(expire_trip_offer_task(self.trip.id, self.trip.assignment_generation - 1))
		self.assertTrue(expire_trip_offer_task(self.trip.id, self.trip.assignment_generation))
		self.assertFalse(expire_trip_offer_task(987654, 1))


class TripApiTests(TestCase):
	def setUp(self):
		self.client = APIClient()

	def _as(self, user_id, role):
		self.client.force_authenticate(user=token_user(user_id, role))

	def test_requires_authentication(self):
		response = self.client.get('/api/trips/current/')
		self.assertEqual(response.status_code, 401)

	def test_full_trip_over_http(self):
		self._as('d1', 'driver')
		response = self.client.post('/api/driver/online/', {
			'latitude': 6.9275, 'longitude': 79.8615, 'name': 'Nimal', 'plate': 'WP-1001',
		}, format='json')
		self.assertEqual(response.status_code, 200)

		self._as('c1', 'customer')
		response = self.client.post('/api/trips/', {'pickup': PICKUP, 'dropoffs': [DROPOFF]}, format='json')
		self.assertEqual(response.status_code, 201)
		trip_id = response.data['trip']['id']
		self.assertEqual(response.data['trip']['status'], 'requested')

		response = self.client.post('/api/trips/%d/dispatch/' % trip_id)
		self.assertEqual(response.status_code, 200)
		self.assertEqual(response.data['trip']['assigned_driver_id'], 'd1')

		self._as('d1', 'driver')
		for action, expected in (('accept', 'accepted'), ('start', 'in_progress'), ('end', 'completed')):
			response = self.client.post('/api/trips/%d/%s/' % (trip_id, action))
			self.assertEqual(response.status_code, 200, response.data)
			self.assertEqual(response.data['trip']['status'], expected)

		trip = Trip.objects.get(pk=trip_id)
		self.assertEqual(response.data['trip']['cost'], round(300 + trip.distance_km * 150))

		response = self.client.get('/api/driver/history/')
		self.assertEqual(response.data['count'], 1)

		self._as('c1', 'customer')
		response = self.client.get('/api/trips/%d/events/?after=1' % trip_id)
		kinds = [e['kind'] for e in response.data['events']]
		self.assertEqual(kinds, ['driver_proposed', 'driver_accepted', 'trip_started', 'trip_completed'])

	def test_dispatch_without_drivers_is_not_an_error(self):
		self._as('c1', 'customer')
		trip_id = self.client.post('/api/trips/', {'pickup': PICKUP, 'dropoffs': [DROPOFF]}, format='json').data['trip']['id']

		response = self.client.post('/api/trips/%d/dispatch/' % trip_id)

		self.assertEqual(response.status_code, 200)
		self.assertFalse(response.data['success'])
		self.assertEqual(response.data['error_code'], 'no_drivers_available')
		self.assertNotIn('error', response.data)
		self.assertEqual(response.data['trip']['status'], 'requested')

	def test_create_validates_dropoffs(self):
		self._as('c1', 'customer')

		response = self.client.post('/api/trips/', {'pickup': PICKUP, 'dropoffs': []}, format='json')
		self.assertEqual(response.status_code, 400)

		response = self.client.post('/api/trips/', {'pickup': PICKUP, 'dropoffs': [DROPOFF] * 6}, format='json')
		self.assertEqual(response.status_code, 400)

		response = self.client.post('/api/trips/', {
			'pickup': {'latitude': 95, 'longitude': 79.86}, 'dropoffs': [DROPOFF],
		}, format='json')
		self.assertEqual(response.status_code, 400)

	def test_second_active_trip_is_refused(self):
		self._as('c1', 'customer')
		self.client.post('/api/trips/', {'pickup': PICKUP, 'dropoffs': [DROPOFF]}, format='json')

		response = self.client.post('/api/trips/', {'pickup': PICKUP, 'dropoffs': [DROPOFF]}, format='json')

		self.assertEqual(response.status_code, 400)
		self.assertEqual(response.data['error'], 'active_trip_exists')

	def test_other_customers_trip_is_hidden(self):
		trip = make_trip(customer_id='c1')

		self._as('c2', 'customer')
		self.assertEqual(self.client.get('/api/trips/%d/' % trip.id).status_code, 404)
		self.assertEqual(self.client.post('/api/trips/%d/cancel/' % trip.id).status_code, 404)

		self._as('admin', 'admin')
		self.assertEqual(self.client.get('/api/trips/%d/' % trip.id).status_code, 200)

	def test_cancel_after_acceptance_conflicts(self):
		trip = make_trip(status=TripStatus.ACCEPTED, driver_id='d1')

		self._as('c1', 'customer')
		response = self.client.post('/api/trips/%d/cancel/' % trip.id, {'reason': 'changed my mind'}, format='json')

		self.assertEqual(response.status_code, 409)
		self.assertEqual(response.data['status'], 'accepted')

	def test_current_trip_polling(self):
		self._as('c1', 'customer')
		self.assertFalse(self.client.get('/api/trips/current/').data['has_active_trip'])

		make_trip(customer_id='c1')
		response = self.client.get('/api/trips/current/')
		self.assertTrue(response.data['has_active_trip'])
		self.assertEqual(response.data['status'], 'requested')

	def test_quote_route_previews_cost(self):
		self._as('c1', 'customer')
		response = self.client.post('/api/trips/quote/', {'pickup': PICKUP, 'dropoffs': [DROPOFF]}, format='json')

		self.assertEqual(response.status_code, 200)
		self.assertEqual(response.data['cost'], 496)

	def test_admin_fare_settings(self):
		self._as('c1', 'customer')
		self.assertEqual(self.client.get('/api/trips/admin/fare-settings/').status_code, 403)

		self._as('admin', 'admin')
		response = self.client.put('/api/trips/admin/fare-settings/', {'per_km_rate': '200.00'}, format='json')
		self.assertEqual(response.status_code, 200)
		self.assertEqual(response.data['per_km_rate'], '200.00')
		self.assertEqual(response.data['base_fare'], '300.00')

		response = self.client.put('/api/trips/admin/fare-settings/', {'base_fare': '-1'}, format='json')
		self.assertEqual(response.status_code, 400)

	def test_admin_trip_list_filters_by_status(self):
		make_trip(customer_id='c1')
		make_trip(customer_id='c2', status=TripStatus.CANCELLED)

		self._as('admin', 'admin')
		response = self.client.get('/api/trips/admin/trips/?status=cancelled')
		self.assertEqual([t['customer_id'] for t in response.data['trips']], ['c2'])

		response = self.client.get('/api/trips/admin/trips/?status=bogus')
		self.assertEqual(response.status_code, 400)

	def test_nearby_drivers_for_the_map(self):
		driver_sessions.go_online('d1', Position(6.9275, 79.8615))

		self._as('c1', 'customer')
		response = self.client.get('/api/driver/nearby/', {'latitude': 6.9271, 'longitude': 79.8612})

		self.assertEqual(response.status_code, 200)
		self.assertEqual(response.data['drivers'][0]['driver_id'], 'd1')

	@override_settings(TRIP_AUTO_DISPATCH=True)
	def test_create_dispatches_automatically(self):
		driver_sessions.go_online('d1', Position(6.9275, 79.8615))

		self._as('c1', 'customer')
		response = self.client.post('/api/trips/', {'pickup': PICKUP, 'dropoffs': [DROPOFF]}, format='json')

		self.assertEqual(response.status_code, 201)
		self.assertEqual(response.data['trip']['status'], 'driver_assigned')
		self.assertEqual(response.data['driver_id'], 'd1')

	@override_settings(TRIP_AUTO_DISPATCH=True)
	def test_create_without_drivers_reports_error_code(self):
		self._as('c1', 'customer')
		response = self.client.post('/api/trips/', {'pickup': PICKUP, 'dropoffs': [DROPOFF]}, format='json')

		self.assertEqual(response.status_code, 201)
		self.assertEqual(response.data['error_code'], 'no_drivers_available')
		self.assertEqual(response.data['trip']['status'], 'requested')
