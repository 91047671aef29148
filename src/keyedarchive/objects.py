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
import functools
import typing

from . import coders


__all__ = [
	"Archivable",
	"NSObject",
	"ancestor_chain",
	"AnyObject",
	"DowncastError",
	"UnarchiveFunction",
	"TypeRegistry",
]


_A = typing.TypeVar("_A", bound="Archivable")


class Archivable(abc.ABC):
	"""Base class for Python classes whose instances can be stored in a keyed archive.
	
	Every subclass has two pieces of class information that are written into the archive:
	
	* :attr:`archived_name`, the name of the class in the archive.
	  Defaults to the Python class name.
	* :attr:`archived_superclass`, the archivable class that is recorded as the superclass.
	  Defaults to the nearest archivable Python base class,
	  or :class:`NSObject` if there is none.
	  It can also be set explicitly in the class body,
	  so that the archived class hierarchy doesn't have to match the Python one.
	
	The class hierarchy is only recorded for compatibility with Objective-C.
	Unarchiving never uses it:
	objects are decoded using the class registered under their exact archived name.
	If a class should also store the fields of its superclass,
	its implementations of :meth:`_encode_to_archiver_` and :meth:`_decode_from_unarchiver_`
	need to call the superclass's implementations (or store the fields themselves).
	"""
	
	archived_name: typing.ClassVar[str]
	archived_superclass: typing.ClassVar[typing.Type["Archivable"]]
	
	def __init_subclass__(cls, *, root: bool = False, **kwargs: typing.Any) -> None:
		super().__init_subclass__(**kwargs)
		
		# Check __dict__ directly,
		# so that values inherited from the superclass aren't picked up.
		if "archived_name" not in cls.__dict__:
			cls.archived_name = cls.__name__
		
		if root:
			# A root class is its own superclass, which ends every ancestor chain.
			cls.archived_superclass = cls
		elif "archived_superclass" in cls.__dict__:
			if not (isinstance(cls.archived_superclass, type) and issubclass(cls.archived_superclass, Archivable)):
				raise TypeError(f"archived_superclass of {cls.__name__} must be an Archivable subclass, not {cls.archived_superclass!r}")
		else:
			for base in cls.__mro__[1:]:
				if base is not Archivable and issubclass(base, Archivable):
					cls.archived_superclass = base
					break
			else:
				cls.archived_superclass = NSObject
		
		# Inherited implementations would silently drop any fields added by this class.
		for method_name in ("_encode_to_archiver_", "_decode_from_unarchiver_"):
			if method_name not in cls.__dict__:
				raise TypeError(f"Archivable class {cls.__name__} must define its own {method_name} - inheriting it from the superclass is not allowed")
	
	@abc.abstractmethod
	def _encode_to_archiver_(self, encoder: coders.Encoder) -> None:
		"""Store this object's fields using the given encoder.
		
		This is the equivalent of ``-[NSCoding encodeWithCoder:]``.
		"""
		
		raise NotImplementedError()
	
	@classmethod
	@abc.abstractmethod
	def _decode_from_unarchiver_(cls: typing.Type[_A], decoder: coders.Decoder) -> typing.Optional[_A]:
		"""Create a new instance from the fields of the object currently being decoded.
		
		This is the equivalent of ``-[NSCoding initWithCoder:]``.
		
		The decoder never raises errors for missing or malformed fields.
		If a field that this class requires is missing,
		this method should return ``None``,
		which makes the decoding of this object fail.
		If the object is the root of the archive,
		this raises :class:`~keyedarchive.envelope.MalformedObjectError`,
		otherwise the field that contains the object is treated as missing
		in the object that contains it.
		"""
		
		raise NotImplementedError()
	
	def __repr__(self) -> str:
		fields = ", ".join(f"{name}={value!r}" for name, value in vars(self).items())
		return f"{type(self).__qualname__}({fields})"


class NSObject(Archivable, root=True):
	"""The root class of the Objective-C class hierarchy.
	
	Archivable classes that don't declare anything else have this class as their archived superclass.
	An archived ``NSObject`` has no fields.
	"""
	
	def _encode_to_archiver_(self, encoder: coders.Encoder) -> None:
		pass
	
	@classmethod
	def _decode_from_unarchiver_(cls, decoder: coders.Decoder) -> "NSObject":
		return cls()
	
	def __repr__(self) -> str:
		if type(self).archived_superclass is type(self):
			return f"<{type(self).archived_name}>"
		return super().__repr__()


def _is_root_class(python_class: typing.Type[Archivable]) -> bool:
	return python_class.archived_superclass is python_class


def ancestor_chain(python_class: typing.Type[Archivable]) -> typing.List[str]:
	"""Get the archived names of a class and all of its archived superclasses,
	starting with the class itself and ending with the root class.
	
	This is the list stored under ``$classes`` in the archived class information.
	"""
	
	if _is_root_class(python_class):
		return [python_class.archived_name]
	else:
		return [python_class.archived_name] + ancestor_chain(python_class.archived_superclass)


class DowncastError(TypeError):
	"""An :class:`AnyObject` doesn't hold a value of the requested class.
	
	The :class:`AnyObject` is left unchanged and available in :attr:`obj`.
	"""
	
	obj: "AnyObject"
	expected: type
	
	def __init__(self, obj: "AnyObject", expected: type) -> None:
		super().__init__(f"Expected an object of class {expected.__qualname__}, but the object has class {obj.type_tag.__qualname__}")
		
		self.obj = obj
		self.expected = expected


class AnyObject(object):
	"""Uniform container for a value of any :class:`Archivable` class.
	
	The behavior that the archiving engine needs
	(formatting for debugging, re-encoding, and getting the ancestor chain)
	is captured from the value's class when the container is created,
	so the engine can handle all values the same way without knowing their classes.
	
	Use :meth:`downcast` to get the value back as its concrete class.
	"""
	
	value: typing.Any
	type_tag: typing.Type[Archivable]
	_debug_function: typing.Callable[[typing.Any], str]
	_encode_function: typing.Callable[[typing.Any, coders.Encoder], None]
	_classes_function: typing.Callable[[], typing.List[str]]
	
	def __init__(self, value: Archivable) -> None:
		super().__init__()
		
		if not isinstance(value, Archivable):
			raise TypeError(f"Only Archivable objects can be stored in an AnyObject, not {type(value).__qualname__}")
		
		python_class = type(value)
		self.value = value
		self.type_tag = python_class
		self._debug_function = python_class.__repr__
		self._encode_function = python_class._encode_to_archiver_
		self._classes_function = functools.partial(ancestor_chain, python_class)
	
	@property
	def class_name(self) -> str:
		return self.type_tag.archived_name
	
	def classes(self) -> typing.List[str]:
		return self._classes_function()
	
	def encode(self, encoder: coders.Encoder) -> None:
		self._encode_function(self.value, encoder)
	
	def downcast(self, python_class: typing.Type[_A]) -> _A:
		"""Get the contained value if its class is exactly ``python_class``.
		
		Subclasses don't match,
		because a subclass has a different archived class.
		
		:raise DowncastError: If the value has a different class.
		"""
		
		if self.type_tag is not python_class:
			raise DowncastError(self, python_class)
		return self.value
	
	def try_downcast(self, python_class: typing.Type[_A]) -> typing.Optional[_A]:
		if self.type_tag is not python_class:
			return None
		return self.value
	
	def __repr__(self) -> str:
		return self._debug_function(self.value)


UnarchiveFunction = typing.Callable[[coders.Decoder], typing.Optional[AnyObject]]


def _make_unarchive_function(python_class: typing.Type[Archivable]) -> UnarchiveFunction:
	def unarchive(decoder: coders.Decoder) -> typing.Optional[AnyObject]:
		value = python_class._decode_from_unarchiver_(decoder)
		if value is None:
			return None
		return AnyObject(value)
	
	return unarchive


class TypeRegistry(object):
	"""Maps archived class names to the functions that unarchive objects of that class.
	
	The registry only ever grows.
	If a class name is registered more than once,
	the first registration is kept and all later ones are ignored.
	
	A registry isn't modified while an archive is being decoded,
	so the same registry can be used for any number of decoding operations.
	"""
	
	_unarchive_functions: typing.Dict[str, UnarchiveFunction]
	
	def __init__(self) -> None:
		super().__init__()
		
		self._unarchive_functions = {}
	
	def register(self, python_class: typing.Type[_A]) -> typing.Type[_A]:
		"""Register an :class:`Archivable` class and all of its archived superclasses.
		
		Returns the class unchanged,
		so this method can also be used as a class decorator.
		"""
		
		if not _is_root_class(python_class):
			self.register(python_class.archived_superclass)
		
		self.register_function(python_class.archived_name, _make_unarchive_function(python_class))
		return python_class
	
	def register_function(self, class_name: str, function: UnarchiveFunction) -> None:
		"""Register a plain unarchive function for the given class name.
		
		Does nothing if the class name is already registered.
		"""
		
		self._unarchive_functions.setdefault(class_name, function)
	
	def lookup(self, class_name: str) -> typing.Optional[UnarchiveFunction]:
		return self._unarchive_functions.get(class_name)
	
	def __contains__(self, class_name: object) -> bool:
		return class_name in self._unarchive_functions
	
	def __len__(self) -> int:
		return len(self._unarchive_functions)
	
	def __iter__(self) -> typing.Iterator[str]:
		return iter(self._unarchive_functions)
	
	def __repr__(self) -> str:
		return f"{type(self).__module__}.{type(self).__qualname__}(<{len(self)} classes>)"
