# This file is part of the python-keyedarchive library.
# Copyright (C) 2020 dgelessus
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU Lesser General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU Lesser General Public License for more details.
#
# You should have received a copy of the GNU Lesser General Public License
# along with this program.  If not, see <https://www.gnu.org/licenses/>.


import abc
import typing

if typing.TYPE_CHECKING:
	from .objects import AnyObject, Archivable


__all__ = [
	"Encoder",
	"Decoder",
]


class Encoder(abc.ABC):
	"""Interface through which archivable objects store their fields.
	
	All methods store the value in the object that is currently being encoded.
	Storing a value under a key that has already been used in the same object replaces the previous value.
	
	These methods are roughly equivalent to the keyed encoding methods of ``NSCoder``,
	such as ``-[NSCoder encodeInt32:forKey:]``.
	"""
	
	@abc.abstractmethod
	def encode_i32(self, value: int, key: str) -> None:
		"""Store a signed 32-bit integer.
		
		:raise TypeError: If the value is not an :class:`int` (or :class:`bool`, which is stored as 0 or 1).
		:raise OverflowError: If the value doesn't fit into 32 bits.
		"""
		
		raise NotImplementedError()
	
	@abc.abstractmethod
	def encode_i64(self, value: int, key: str) -> None:
		"""Store a signed 64-bit integer.
		
		:raise TypeError: If the value is not an :class:`int` (or :class:`bool`, which is stored as 0 or 1).
		:raise OverflowError: If the value doesn't fit into 64 bits.
		"""
		
		raise NotImplementedError()
	
	@abc.abstractmethod
	def encode_string(self, value: str, key: str) -> None:
		raise NotImplementedError()
	
	@abc.abstractmethod
	def encode_object(self, value: "typing.Union[AnyObject, Archivable, None]", key: str) -> None:
		"""Store a nested object.
		
		The object may be an :class:`~keyedarchive.objects.AnyObject`,
		an :class:`~keyedarchive.objects.Archivable` instance (which is wrapped in an :class:`~keyedarchive.objects.AnyObject` automatically),
		or ``None``, which is stored as a nil reference.
		"""
		
		raise NotImplementedError()


class Decoder(abc.ABC):
	"""Interface through which archivable objects read their fields.
	
	All methods read from the object that is currently being decoded.
	Missing or malformed fields are never an error -
	the methods return a default value instead
	(0 for integers and ``None`` for everything else).
	A ``_decode_from_unarchiver_`` implementation that requires a field
	must check for the default value itself and return ``None`` to fail.
	"""
	
	@abc.abstractmethod
	def contains_key(self, key: str) -> bool:
		raise NotImplementedError()
	
	@abc.abstractmethod
	def decode_i32(self, key: str) -> int:
		"""Read a signed 32-bit integer, or 0 if there is no integer under this key.
		
		Larger stored values are truncated to 32 bits.
		"""
		
		raise NotImplementedError()
	
	@abc.abstractmethod
	def decode_i64(self, key: str) -> int:
		"""Read a signed 64-bit integer, or 0 if there is no integer under this key."""
		
		raise NotImplementedError()
	
	@abc.abstractmethod
	def decode_string(self, key: str) -> typing.Optional[str]:
		raise NotImplementedError()
	
	@abc.abstractmethod
	def decode_object(self, key: str) -> "typing.Optional[AnyObject]":
		"""Read a nested object, or ``None`` if it is missing, nil, or could not be decoded."""
		
		raise NotImplementedError()
