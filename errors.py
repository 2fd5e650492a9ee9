"""
TableMesh
Copyright (C) 2024 thiccaxe

This program is free software: you can redistribute it and/or modify
it under the terms of the GNU Affero General Public License as published
by the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.

This program is distributed in the hope that it will be useful,
but WITHOUT ANY WARRANTY; without even the implied warranty of
MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
GNU Affero General Public License for more details.

You should have received a copy of the GNU Affero General Public License
along with this program.  If not, see <https://www.gnu.org/licenses/>.
"""


class SessionError(Exception):
    message = "Session error"

    def __init__(self, message=None):
        super().__init__(message or self.message)


class AddressClaimed(SessionError):
    message = "Room code already in use. Try creating a new room."


class RoomNotFound(SessionError):
    message = "Room not found. Check the room code and try again."


class ConnectTimeout(SessionError):
    message = "Connection timeout. The room may no longer exist."


class RoomFull(SessionError):
    message = "Room is full"


class SessionExpired(SessionError):
    message = "Session expired. Please rejoin the room."


class NoSession(SessionError):
    message = "No session to reconnect to"


class NoSuccessor(SessionError):
    message = "Host left and no other participants available"


class RemoteError(SessionError): pass


class MalformedMessage(SessionError):
    message = "Malformed message"
