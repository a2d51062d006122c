from tambola import db, bcrypt
from flask_login import UserMixin
import json
import random
import time
import uuid

# O and 0 left out so codes read unambiguously
ROOM_CODE_ALPHABET = 'ABCDEFGHIJKLMNPQRSTUVWXYZ123456789'

ROOM_STATUSES = ('idle', 'running', 'paused', 'stopped')
CALLING_MODES = ('manual', 'auto')

REQUEST_PENDING = 'pending'
REQUEST_APPROVED = 'approved'
REQUEST_REJECTED = 'rejected'

CLAIM_PENDING = 'pending_admin_approval'
CLAIM_AUTO_REJECTED = 'rejected_auto_invalid'
CLAIM_APPROVED = 'approved'
CLAIM_ADMIN_REJECTED = 'rejected_admin'


def _loads(value, default):
    if not value:
        return default
    return json.loads(value)


def generate_unique_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:16].upper()}"


def generate_room_code(length=6):
    """Generate a unique, short room code."""
    while True:
        code = ''.join(random.choices(ROOM_CODE_ALPHABET, k=length))
        if not Room.query.filter_by(room_code=code).first():
            return code


class User(UserMixin, db.Model):
    __tablename__ = 'user'
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(64), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(256), nullable=False)

    def set_password(self, password):
        self.password_hash = bcrypt.generate_password_hash(password).decode('utf-8')

    def check_password(self, password):
        return bcrypt.check_password_hash(self.password_hash, password)

    def to_dict(self):
        return {
            'id': self.id,
            'username': self.username,
        }


class Room(db.Model):
    __tablename__ = 'room'
    id = db.Column(db.Integer, primary_key=True)
    room_code = db.Column(db.String(12), unique=True, nullable=False, index=True)
    name = db.Column(db.String(120), nullable=False)
    admin_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    admin_display_name = db.Column(db.String(64), nullable=False)
    status = db.Column(db.String(16), nullable=False, default='idle')  # idle, running, paused, stopped
    called_numbers_json = db.Column('called_numbers', db.Text, nullable=True)  # JSON list, call order
    latest_called_number = db.Column(db.Integer, nullable=True)
    latest_called_phrase = db.Column(db.String(64), nullable=True)
    last_number_call_at = db.Column(db.Float, nullable=True)
    calling_mode = db.Column(db.String(16), nullable=False, default='manual')
    auto_call_interval = db.Column(db.Integer, nullable=False, default=5)
    ticket_price = db.Column(db.Float, nullable=False, default=0.0)
    max_tickets_per_player = db.Column(db.Integer, nullable=False, default=6)
    total_money_collected = db.Column(db.Float, nullable=False, default=0.0)
    created_at = db.Column(db.Float, nullable=False, default=time.time)
    updated_at = db.Column(db.Float, nullable=False, default=time.time)
    game_number = db.Column(db.Integer, nullable=False, default=0)  # bumped on every start
    game_start_time = db.Column(db.Float, nullable=True)
    game_end_time = db.Column(db.Float, nullable=True)
    game_summary_json = db.Column('game_summary', db.Text, nullable=True)
    version = db.Column(db.Integer, nullable=False)

    players = db.relationship('PlayerPresence', back_populates='room', cascade='all, delete-orphan',
                              order_by='PlayerPresence.id')
    rules = db.relationship('PrizeRule', back_populates='room', cascade='all, delete-orphan',
                            order_by='PrizeRule.position')
    winners = db.relationship('Winner', back_populates='room', cascade='all, delete-orphan',
                              order_by='Winner.id')

    __mapper_args__ = {'version_id_col': version}

    def __init__(self, **kwargs):
        super(Room, self).__init__(**kwargs)
        if not self.room_code:
            self.room_code = generate_room_code()

    @property
    def called_numbers(self):
        return _loads(self.called_numbers_json, [])

    @called_numbers.setter
    def called_numbers(self, numbers):
        self.called_numbers_json = json.dumps(list(numbers))

    @property
    def game_summary(self):
        return _loads(self.game_summary_json, None)

    @game_summary.setter
    def game_summary(self, summary):
        self.game_summary_json = json.dumps(summary) if summary is not None else None

    def player(self, user_id):
        for p in self.players:
            if p.user_id == user_id:
                return p
        return None

    def rule(self, rule_id):
        for r in self.rules:
            if r.rule_id == rule_id:
                return r
        return None

    def to_dict(self, include_players=True):
        data = {
            'id': self.id,
            'room_code': self.room_code,
            'name': self.name,
            'admin_id': self.admin_id,
            'admin_display_name': self.admin_display_name,
            'status': self.status,
            'called_numbers': self.called_numbers,
            'latest_called_number': self.latest_called_number,
            'latest_called_phrase': self.latest_called_phrase,
            'last_number_call_at': self.last_number_call_at,
            'calling_mode': self.calling_mode,
            'auto_call_interval': self.auto_call_interval,
            'ticket_price': self.ticket_price,
            'max_tickets_per_player': self.max_tickets_per_player,
            'total_money_collected': self.total_money_collected,
            'created_at': self.created_at,
            'game_number': self.game_number,
            'game_start_time': self.game_start_time,
            'game_end_time': self.game_end_time,
            'game_summary': self.game_summary,
            'rules': [r.to_dict() for r in self.rules],
            'winners': [w.to_dict() for w in self.winners],
        }
        if include_players:
            data['players'] = {str(p.user_id): p.to_dict() for p in self.players}
        return data


class PlayerPresence(db.Model):
    __tablename__ = 'player_presence'
    id = db.Column(db.Integer, primary_key=True)
    room_id = db.Column(db.Integer, db.ForeignKey('room.id'), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    display_name = db.Column(db.String(64), nullable=False)
    ticket_count = db.Column(db.Integer, nullable=False, default=0)
    last_seen = db.Column(db.Float, nullable=False, default=time.time)
    online = db.Column(db.Boolean, nullable=False, default=True)
    is_admin = db.Column(db.Boolean, nullable=False, default=False)
    room = db.relationship('Room', back_populates='players')

    __table_args__ = (db.UniqueConstraint('room_id', 'user_id', name='uq_presence_room_user'),)

    def to_dict(self):
        return {
            'user_id': self.user_id,
            'display_name': self.display_name,
            'ticket_count': self.ticket_count,
            'last_seen': self.last_seen,
            'online': self.online,
            'is_admin': self.is_admin,
        }


class PrizeRule(db.Model):
    __tablename__ = 'prize_rule'
    id = db.Column(db.Integer, primary_key=True)
    room_id = db.Column(db.Integer, db.ForeignKey('room.id'), nullable=False, index=True)
    rule_id = db.Column(db.String(64), nullable=False)
    position = db.Column(db.Integer, nullable=False, default=0)
    pattern = db.Column(db.String(64), nullable=True)
    name = db.Column(db.String(64), nullable=False)
    description = db.Column(db.String(256), nullable=False, default='')
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    coins_per_prize = db.Column(db.Float, nullable=False, default=0.0)
    percentage_of_pool = db.Column(db.Float, nullable=True)
    max_prizes = db.Column(db.Integer, nullable=False, default=1)
    claims_json = db.Column('claims', db.Text, nullable=True)  # JSON list of awarded claims
    room = db.relationship('Room', back_populates='rules')

    __table_args__ = (db.UniqueConstraint('room_id', 'rule_id', name='uq_rule_room_rule_id'),)

    @property
    def claims(self):
        return _loads(self.claims_json, [])

    @claims.setter
    def claims(self, entries):
        self.claims_json = json.dumps(list(entries))

    def to_dict(self):
        return {
            'id': self.rule_id,
            'pattern': self.pattern or self.rule_id,
            'name': self.name,
            'description': self.description,
            'is_active': self.is_active,
            'coins_per_prize': self.coins_per_prize,
            'percentage_of_pool': self.percentage_of_pool,
            'max_prizes': self.max_prizes,
            'claims': self.claims,
        }


class Winner(db.Model):
    __tablename__ = 'winner'
    id = db.Column(db.Integer, primary_key=True)
    room_id = db.Column(db.Integer, db.ForeignKey('room.id'), nullable=False, index=True)
    claim_id = db.Column(db.String(40), nullable=False)
    user_id = db.Column(db.Integer, nullable=False)
    player_name = db.Column(db.String(64), nullable=False)
    ticket_id = db.Column(db.String(40), nullable=False)
    prize_rule_id = db.Column(db.String(64), nullable=False)
    prize_name = db.Column(db.String(64), nullable=False)
    coins_awarded = db.Column(db.Integer, nullable=False, default=0)
    awarded_at = db.Column(db.Float, nullable=False, default=time.time)
    room = db.relationship('Room', back_populates='winners')

    def to_dict(self):
        return {
            'claim_id': self.claim_id,
            'user_id': self.user_id,
            'player_name': self.player_name,
            'ticket_id': self.ticket_id,
            'prize_rule_id': self.prize_rule_id,
            'prize_name': self.prize_name,
            'coins_awarded': self.coins_awarded,
            'timestamp': self.awarded_at,
        }


class Ticket(db.Model):
    __tablename__ = 'ticket'
    id = db.Column(db.String(40), primary_key=True)
    room_id = db.Column(db.Integer, db.ForeignKey('room.id'), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    player_name = db.Column(db.String(64), nullable=False)
    numbers_json = db.Column('numbers', db.Text, nullable=False)  # JSON 3x9 grid, null for blanks
    marked_json = db.Column('marked', db.Text, nullable=True)
    created_at = db.Column(db.Float, nullable=False, default=time.time)
    room = db.relationship('Room')

    def __init__(self, **kwargs):
        numbers = kwargs.pop('numbers', None)
        super(Ticket, self).__init__(**kwargs)
        if not self.id:
            self.id = generate_unique_id('TICKET')
        if numbers is not None:
            self.numbers_json = json.dumps(numbers)

    @property
    def numbers(self):
        return _loads(self.numbers_json, [])

    @property
    def marked(self):
        return _loads(self.marked_json, [])

    @marked.setter
    def marked(self, values):
        self.marked_json = json.dumps(sorted(set(values)))

    def to_dict(self):
        return {
            'ticket_id': self.id,
            'room_code': self.room.room_code if self.room else None,
            'user_id': self.user_id,
            'player_name': self.player_name,
            'numbers': self.numbers,
            'marked': self.marked,
            'created_at': self.created_at,
        }


class TicketRequest(db.Model):
    __tablename__ = 'ticket_request'
    id = db.Column(db.String(40), primary_key=True)
    room_id = db.Column(db.Integer, db.ForeignKey('room.id'), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    player_name = db.Column(db.String(64), nullable=False)
    status = db.Column(db.String(16), nullable=False, default=REQUEST_PENDING)  # pending, approved, rejected
    requested_at = db.Column(db.Float, nullable=False, default=time.time)
    ticket_id = db.Column(db.String(40), nullable=True)
    reason = db.Column(db.String(256), nullable=True)
    reviewed_by = db.Column(db.Integer, nullable=True)
    reviewed_at = db.Column(db.Float, nullable=True)

    def __init__(self, **kwargs):
        super(TicketRequest, self).__init__(**kwargs)
        if not self.id:
            self.id = generate_unique_id('TICKETREQ')

    def to_dict(self):
        return {
            'request_id': self.id,
            'user_id': self.user_id,
            'player_name': self.player_name,
            'status': self.status,
            'requested_at': self.requested_at,
            'ticket_id': self.ticket_id,
            'reason': self.reason,
            'reviewed_by': self.reviewed_by,
            'reviewed_at': self.reviewed_at,
        }


class PrizeClaim(db.Model):
    __tablename__ = 'prize_claim'
    id = db.Column(db.String(40), primary_key=True)
    room_id = db.Column(db.Integer, db.ForeignKey('room.id'), nullable=False, index=True)
    ticket_id = db.Column(db.String(40), db.ForeignKey('ticket.id'), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    player_name = db.Column(db.String(64), nullable=False)
    prize_rule_id = db.Column(db.String(64), nullable=False, index=True)
    prize_name = db.Column(db.String(64), nullable=False)
    game_number = db.Column(db.Integer, nullable=False, default=0)
    claimed_numbers_json = db.Column('claimed_numbers', db.Text, nullable=False)
    effective_numbers_json = db.Column('effectively_claimed_numbers', db.Text, nullable=False)
    status = db.Column(db.String(32), nullable=False)
    server_validation_result = db.Column(db.Boolean, nullable=False, default=False)
    reason = db.Column(db.String(256), nullable=True)
    claimed_at = db.Column(db.Float, nullable=False, default=time.time)
    reviewed_by = db.Column(db.Integer, nullable=True)
    reviewed_at = db.Column(db.Float, nullable=True)
    coins_awarded = db.Column(db.Integer, nullable=True)

    def __init__(self, **kwargs):
        claimed = kwargs.pop('claimed_numbers', None)
        effective = kwargs.pop('effectively_claimed_numbers', None)
        super(PrizeClaim, self).__init__(**kwargs)
        if not self.id:
            self.id = generate_unique_id('CLAIM')
        self.claimed_numbers_json = json.dumps(list(claimed or []))
        self.effective_numbers_json = json.dumps(list(effective or []))

    @property
    def claimed_numbers(self):
        return _loads(self.claimed_numbers_json, [])

    @property
    def effectively_claimed_numbers(self):
        return _loads(self.effective_numbers_json, [])

    def to_dict(self):
        return {
            'claim_id': self.id,
            'room_id': self.room_id,
            'ticket_id': self.ticket_id,
            'user_id': self.user_id,
            'player_name': self.player_name,
            'prize_rule_id': self.prize_rule_id,
            'prize_name': self.prize_name,
            'game_number': self.game_number,
            'claimed_numbers': self.claimed_numbers,
            'effectively_claimed_numbers': self.effectively_claimed_numbers,
            'status': self.status,
            'server_validation_result': self.server_validation_result,
            'reason': self.reason,
            'claimed_at': self.claimed_at,
            'reviewed_by': self.reviewed_by,
            'reviewed_at': self.reviewed_at,
            'coins_awarded': self.coins_awarded,
        }
