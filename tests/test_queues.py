"""Tests for the queue registry."""

from datetime import datetime, timedelta

import pytest

from pbxlive.channels import ChannelManager
from pbxlive.queues import QueueManager

from .conftest import make_event


@pytest.fixture
def channel_manager():
    cm = ChannelManager()
    cm.handle_new_channel_event(make_event('Newchannel', Channel='SIP/300-0003', Uniqueid='3.3'))
    return cm


@pytest.fixture
def queues(channel_manager):
    return QueueManager(channel_manager)


def test_queue_params(queues):
    queues.handle_queue_params_event(make_event(
        'QueueParams', Queue='support', Max='10', Strategy='ringall', Calls='2',
        Holdtime='30', Completed='5', Abandoned='1', ServiceLevel='60', Weight='0'))

    queue = queues.get_queue('support')
    assert (queue.max, queue.strategy, queue.calls) == (10, 'ringall', 2)
    assert (queue.hold_time, queue.completed, queue.abandoned, queue.service_level) == (30, 5, 1, 60)


def test_queue_params_replayed_is_idempotent(queues):
    event = make_event('QueueParams', Queue='support', Strategy='ringall')
    queues.handle_queue_params_event(event)
    queues.handle_queue_params_event(event)
    assert len(queues) == 1


def test_queue_member(queues):
    queues.handle_queue_member_event(make_event(
        'QueueMember', Queue='support', Location='SIP/100', Name='Alice',
        Membership='dynamic', Penalty='2', CallsTaken='7', Status='1', Paused='0'))

    member = queues.get_queue('support').members['SIP/100']
    assert member.name == 'Alice'
    assert member.dynamic
    assert member.penalty == 2
    assert member.to_dict()['status'] == 'Not in use'


def test_queue_entry_resolves_channel_and_wait(queues, channel_manager):
    queues.handle_queue_entry_event(make_event(
        'QueueEntry', Queue='support', Position='1', Channel='SIP/300-0003',
        Uniqueid='3.3', CallerIDNum='5551234', Wait='60'))

    entry = queues.get_queue('support').entries[0]
    assert entry.channel is channel_manager.get_channel_by_id('3.3')
    assert entry.caller_id_number == '5551234'
    assert datetime.now() - entry.date_joined >= timedelta(seconds=59)


def test_join_creates_queue_and_leave_removes_entry(queues):
    queues.handle_join_event(make_event(
        'Join', Queue='sales', Channel='SIP/300-0003', Uniqueid='3.3', Position='1', Count='1'))
    queues.handle_join_event(make_event(
        'QueueCallerJoin', Queue='sales', Channel='SIP/400-0004', Uniqueid='4.4', Position='2', Count='2'))

    queue = queues.get_queue('sales')
    assert [e.uniqueid for e in queue.entries] == ['3.3', '4.4']

    queues.handle_leave_event(make_event('Leave', Queue='sales', Channel='SIP/300-0003', Uniqueid='3.3'))

    assert [(e.uniqueid, e.position) for e in queue.entries] == [('4.4', 1)]


def test_join_replayed_does_not_duplicate(queues):
    event = make_event('Join', Queue='sales', Channel='SIP/300-0003', Uniqueid='3.3', Position='1')
    queues.handle_join_event(event)
    queues.handle_join_event(event)
    assert len(queues.get_queue('sales').entries) == 1


def test_leave_for_unknown_queue_is_ignored(queues):
    queues.handle_leave_event(make_event('Leave', Queue='nope', Channel='SIP/300-0003', Uniqueid='3.3'))
    assert queues.get_queues() == []


def test_to_dict(queues):
    queues.handle_queue_params_event(make_event('QueueParams', Queue='support', Strategy='ringall'))
    queues.handle_join_event(make_event('Join', Queue='support', Channel='SIP/300-0003', Uniqueid='3.3'))

    data = queues.get_queue('support').to_dict()
    assert data['calls_waiting'] == 1
    assert data['entries'][0]['callerid'] == 'Unknown'
    assert data['members'] == {}


def test_join_at_head_takes_that_slot(queues):
    for uniqueid, position in (('a', '1'), ('b', '2'), ('c', '1')):
        queues.handle_join_event(make_event(
            'Join', Queue='sales', Channel=f'SIP/{uniqueid}-0001', Uniqueid=uniqueid, Position=position))

    entries = queues.get_queue('sales').entries
    assert [(e.uniqueid, e.position) for e in entries] == [('c', 1), ('a', 2), ('b', 3)]


def test_join_past_the_end_is_appended(queues):
    queues.handle_join_event(make_event('Join', Queue='sales', Channel='SIP/a-0001', Uniqueid='a', Position='1'))
    queues.handle_join_event(make_event('Join', Queue='sales', Channel='SIP/b-0001', Uniqueid='b', Position='7'))
    queues.handle_join_event(make_event('Join', Queue='sales', Channel='SIP/c-0001', Uniqueid='c'))

    entries = queues.get_queue('sales').entries
    assert [(e.uniqueid, e.position) for e in entries] == [('a', 1), ('b', 2), ('c', 3)]


def test_queue_entry_does_not_bind_channel_by_name_for_other_uniqueid(queues):
    queues.handle_queue_entry_event(make_event(
        'QueueEntry', Queue='support', Position='1', Channel='SIP/300-0003', Uniqueid='0.9'))

    assert queues.get_queue('support').entries[0].channel is None
